from __future__ import annotations


class VoiceAttestError(Exception):
    """Base class for errors raised by the attestation engine."""


class InvalidIdentity(VoiceAttestError, ValueError):
    """An identity component (location, agent or prompt hash) is empty or malformed."""


class SpecParseFailure(VoiceAttestError, ValueError):
    """The embedded rule-set block exists but cannot be used."""


class SnippetRetrievalFailure(VoiceAttestError):
    """The snippet source could not be reached or returned garbage."""


class AttestationConflict(VoiceAttestError):
    """A receipt for this turn id has already been stored."""


class UnrecognizedModelReply(VoiceAttestError, ValueError):
    """The model returned an envelope none of the known reply shapes match."""
