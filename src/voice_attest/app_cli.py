from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from .assembler import derive_turn_identity
from .diagnostics import ExpectedAttestation, verify_attestation
from .domain_types import CollectedField, CompileRequest
from .engine import AttestationEngine
from .errors import InvalidIdentity, SpecParseFailure
from .http_snippet_client import HttpSnippetSource
from .presenters import (
    render_attestation,
    render_diagnostic_report,
    render_guard_decision,
    render_verification,
)
from .projections import SessionProjection, SpecHashTimelineProjection
from .rule_set import embed_rule_set, extract_rule_set, parse_rule_set_json
from .settings import EngineSettings
from .snippet_client import FakeSnippetSource, FallbackSnippetSource, SnippetSource
from .store import AttestationStore, InMemoryStorage, JsonFileStorage, KeyValueStorage


def _build_engine(settings: EngineSettings | None = None) -> AttestationEngine:
    settings = settings or EngineSettings.from_env()

    snippet_source: SnippetSource
    if settings.memory_url:
        remote = HttpSnippetSource(
            base_url=settings.memory_url, token=settings.memory_token, timeout_secs=settings.timeout_secs
        )
        # Leave part of the snippet budget for the local fallback.
        snippet_source = FallbackSnippetSource(remote, remote_timeout_secs=settings.snippet_timeout_secs / 2)
    else:
        snippet_source = FakeSnippetSource()

    storage: KeyValueStorage = JsonFileStorage(settings.store_dir) if settings.store_dir else InMemoryStorage()
    return AttestationEngine(snippet_source=snippet_source, store=AttestationStore(storage), settings=settings)


def _read(path: str) -> str:
    return Path(path).read_text(encoding="utf-8")


def hash_prompt(engine: AttestationEngine, args: argparse.Namespace) -> None:
    identity = derive_turn_identity(args.location_id, args.agent_id, _read(args.prompt_file))
    print(f"Prompt hash: {identity.prompt_hash}")
    print(f"Spec hash: {identity.spec_hash} ({identity.rule_set.source.value})")
    print(f"Scope id: {identity.scope_id}")
    if identity.rule_set.parse_error:
        print(f"Spec error: {identity.rule_set.parse_error}")


def compile_turn(engine: AttestationEngine, args: argparse.Namespace) -> None:
    request = CompileRequest(
        location_id=args.location_id,
        agent_id=args.agent_id,
        system_prompt=_read(args.prompt_file),
        context_json=_read(args.context_file) if args.context_file else "",
        conversation_summary=args.summary or "",
        last_turns=tuple(args.turn or ()),
        snippets_enabled=not args.no_snippets,
        guard_enabled=not args.no_guard,
        max_turns_to_include=args.max_turns,
        max_tokens=args.max_tokens,
        turn_id=args.turn_id,
    )
    compiled = asyncio.run(engine.compile(request))
    if args.json:
        print(json.dumps(
            {"messages": compiled.message_dicts(), "attestation": compiled.attestation.to_dict()},
            indent=2,
        ))
    else:
        print(render_attestation(compiled.attestation))


def guard_reply(engine: AttestationEngine, args: argparse.Namespace) -> None:
    rule_set = extract_rule_set(_read(args.prompt_file))
    fields = [CollectedField(key=k) for k in args.field or ()]
    decision = engine.guard(rule_set, fields, args.candidate)
    print(render_guard_decision(decision))
    if not decision.approved:
        sys.exit(1)


def diagnose_scope(engine: AttestationEngine, args: argparse.Namespace) -> None:
    report = engine.diagnose(args.scope_id, args.expected_prompt_hash, args.expected_spec_hash)
    print(render_diagnostic_report(report))
    if report.overall_health == "critical":
        sys.exit(1)


def verify_turn(engine: AttestationEngine, args: argparse.Namespace) -> None:
    attestation = engine.store.get(args.turn_id)
    if attestation is None:
        print(f"No attestation stored for turn {args.turn_id}", file=sys.stderr)
        sys.exit(1)
    expected = ExpectedAttestation(
        scope_id=args.scope_id,
        spec_hash=args.spec_hash,
        snippets_expected=args.expect_snippets,
        guard_enabled=not args.allow_guard_off,
    )
    result = verify_attestation(attestation, expected)
    print(render_verification(result))
    if not result.passed:
        sys.exit(1)


def scope_report(engine: AttestationEngine, args: argparse.Namespace) -> None:
    attestations = sorted(engine.store.list_by_scope(args.scope_id, limit=args.limit), key=lambda a: a.timestamp)
    session = SessionProjection(args.conversation_id or args.scope_id, args.scope_id)
    timeline = SpecHashTimelineProjection()
    for attestation in attestations:
        session.feed(attestation)
        timeline.feed(attestation)
    print(session.render())
    print()
    print(timeline.render())
    if args.conversation_id:
        engine.store.save_session(session.build())


def embed_spec(engine: AttestationEngine, args: argparse.Namespace) -> None:
    rule_set = parse_rule_set_json(_read(args.spec_file))
    updated = embed_rule_set(_read(args.prompt_file), rule_set)
    if args.output:
        Path(args.output).write_text(updated, encoding="utf-8")
    else:
        sys.stdout.write(updated)


def main() -> None:
    settings = EngineSettings.from_env()
    parser = argparse.ArgumentParser(
        prog="voice-attest",
        description="Compile, guard and audit voice agent turns with verifiable receipts.",
    )
    parser.add_argument("--log-level", default=settings.log_level, help="Logging level (default: WARNING)")
    sub = parser.add_subparsers(dest="command", required=True)

    hp = sub.add_parser("hash", help="Print prompt hash, spec hash and scope id")
    hp.add_argument("--prompt-file", required=True)
    hp.add_argument("--location-id", required=True)
    hp.add_argument("--agent-id", required=True)

    cp = sub.add_parser("compile", help="Compile one turn and print its receipt")
    cp.add_argument("--prompt-file", required=True)
    cp.add_argument("--location-id", required=True)
    cp.add_argument("--agent-id", required=True)
    cp.add_argument("--context-file", default=None)
    cp.add_argument("--summary", default=None)
    cp.add_argument("--turn", action="append", help="Recent turn, repeatable, oldest first")
    cp.add_argument("--turn-id", default=None)
    cp.add_argument("--max-turns", type=int, default=8)
    cp.add_argument("--max-tokens", type=int, default=None)
    cp.add_argument("--no-snippets", action="store_true")
    cp.add_argument("--no-guard", action="store_true")
    cp.add_argument("--json", action="store_true", help="Print messages and receipt as JSON")

    gp = sub.add_parser("guard", help="Run the response guard on a candidate reply")
    gp.add_argument("--prompt-file", required=True)
    gp.add_argument("--candidate", required=True)
    gp.add_argument("--field", action="append", help="Collected field name, repeatable")

    dp = sub.add_parser("diagnose", help="Diagnose stored receipts for a scope")
    dp.add_argument("--scope-id", required=True)
    dp.add_argument("--expected-prompt-hash", default=None)
    dp.add_argument("--expected-spec-hash", default=None)

    vp = sub.add_parser("verify", help="Verify one stored receipt against expectations")
    vp.add_argument("--turn-id", required=True)
    vp.add_argument("--scope-id", default=None)
    vp.add_argument("--spec-hash", default=None)
    vp.add_argument("--expect-snippets", action="store_true")
    vp.add_argument("--allow-guard-off", action="store_true")

    rp = sub.add_parser("report", help="Session aggregate and spec hash timeline for a scope")
    rp.add_argument("--scope-id", required=True)
    rp.add_argument("--conversation-id", default=None, help="Also store the aggregate under this id")
    rp.add_argument("--limit", type=int, default=100)

    ep = sub.add_parser("embed-spec", help="Embed a rule-set JSON file into a prompt")
    ep.add_argument("--prompt-file", required=True)
    ep.add_argument("--spec-file", required=True)
    ep.add_argument("--output", default=None)

    args = parser.parse_args()
    logging.basicConfig(level=args.log_level.upper(), format="%(levelname)s %(name)s: %(message)s")

    engine = _build_engine(settings)
    commands = {
        "hash": hash_prompt,
        "compile": compile_turn,
        "guard": guard_reply,
        "diagnose": diagnose_scope,
        "verify": verify_turn,
        "report": scope_report,
        "embed-spec": embed_spec,
    }
    try:
        commands[args.command](engine, args)
    except (InvalidIdentity, SpecParseFailure) as exc:
        print(f"error: {exc}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
