from .domain_types import (
    AppliedSnippet,
    ChatMessage,
    CollectedField,
    CompiledContext,
    CompileRequest,
    Diagnostic,
    DiagnosticReport,
    GuardDecision,
    SessionAttestation,
    TokenBudget,
    TurnAttestation,
    VerificationResult,
)
from .engine import AttestationEngine
from .errors import (
    AttestationConflict,
    InvalidIdentity,
    SnippetRetrievalFailure,
    SpecParseFailure,
    UnrecognizedModelReply,
    VoiceAttestError,
)
from .http_snippet_client import HttpSnippetSource
from .model_client import HttpModelClient, parse_model_reply
from .rule_set import RuleSet, SpecSource, extract_rule_set
from .snippet_client import (
    FakeSnippetSource,
    FallbackSnippetSource,
    InMemorySnippetSource,
    SnippetFetch,
    SnippetSource,
    SnippetWrite,
)
from .store import AttestationStore, InMemoryStorage, JsonFileStorage

__all__ = [
    "AppliedSnippet",
    "AttestationConflict",
    "AttestationEngine",
    "AttestationStore",
    "ChatMessage",
    "CollectedField",
    "CompileRequest",
    "CompiledContext",
    "Diagnostic",
    "DiagnosticReport",
    "FakeSnippetSource",
    "FallbackSnippetSource",
    "GuardDecision",
    "HttpModelClient",
    "HttpSnippetSource",
    "InMemorySnippetSource",
    "InMemoryStorage",
    "InvalidIdentity",
    "JsonFileStorage",
    "RuleSet",
    "SessionAttestation",
    "SnippetFetch",
    "SnippetRetrievalFailure",
    "SnippetSource",
    "SnippetWrite",
    "SpecParseFailure",
    "SpecSource",
    "TokenBudget",
    "TurnAttestation",
    "UnrecognizedModelReply",
    "VerificationResult",
    "VoiceAttestError",
    "extract_rule_set",
    "parse_model_reply",
]
