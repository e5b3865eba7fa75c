#!/usr/bin/env python3
"""
verify_audit.py: offline check of the Guest House sign-in audit log.

  python verify_audit.py audit/auth_audit.jsonl --state audit/auth_audit.state --strict

Fails when a line is not a JSON object, when a prev_hash/hash link does not
hold, when the state file disagrees with the last line, and (with --strict)
when a phone number or email was written in clear.

Exit codes: 0 OK, 1 verification failed, 2 log missing or unreadable.
"""

from __future__ import annotations

import argparse
import sys
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from guest_house.audit import GENESIS_HASH, chain_hash, iter_log

CLEAR_TEXT_FIELDS = ("phone_number", "email")


@dataclass
class VerifyResult:
    ok: bool
    lines: int
    last_hash: Optional[str]
    message: str
    events: Counter = field(default_factory=Counter)


def _looks_like_link(value: Any) -> bool:
    return isinstance(value, str) and len(value) == 64 and all(c in "0123456789abcdef" for c in value.lower())


def verify_audit(
    jsonl_path: Path,
    state_path: Optional[Path] = None,
    *,
    strict: bool = False,
) -> VerifyResult:
    if not jsonl_path.exists():
        return VerifyResult(False, 0, None, f"Log not found: {jsonl_path}")

    seen = 0
    events: Counter = Counter()
    prev = GENESIS_HASH
    last_hash: Optional[str] = None

    def failed(msg: str) -> VerifyResult:
        return VerifyResult(False, seen, last_hash, msg, events)

    try:
        for lineno, event in iter_log(jsonl_path):
            seen += 1
            events[str(event.get("event", "?"))] += 1
            where = f"{jsonl_path}:{lineno}"

            leaked = [k for k in CLEAR_TEXT_FIELDS if k in event] if strict else []
            if leaked:
                return failed(f"{where}: clear-text field(s) {', '.join(leaked)}")

            if not (_looks_like_link(event.get("prev_hash")) and _looks_like_link(event.get("hash"))):
                return failed(f"{where}: prev_hash/hash missing or not 64-hex")
            if event["prev_hash"] != prev:
                return failed(f"{where}: prev_hash mismatch: expected {prev} got {event['prev_hash']}")

            expected = chain_hash(prev, event)
            if event["hash"] != expected:
                return failed(f"{where}: hash mismatch: expected {expected} got {event['hash']}")

            prev = last_hash = event["hash"]
    except ValueError as e:
        return failed(str(e))

    if state_path is not None:
        if not state_path.exists():
            return failed(f"State file not found: {state_path}")
        state_val = state_path.read_text(encoding="utf-8").strip()
        if state_val != (last_hash or ""):
            return failed(f"State mismatch: state={state_val} log_last={last_hash}")

    return VerifyResult(True, seen, last_hash, "OK", events)


def _report(res: VerifyResult) -> None:
    out = sys.stdout if res.ok else sys.stderr
    print("OK" if res.ok else "FAIL", file=out)
    if not res.ok:
        print(res.message, file=out)
    print(f"lines={res.lines}", file=out)
    for name, count in sorted(res.events.items()):
        print(f"event.{name}={count}", file=out)
    if res.last_hash:
        print(f"last_hash={res.last_hash}", file=out)


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description="Verify the Guest House sign-in audit log (hash-chained JSONL).")
    parser.add_argument("log", type=Path, help="audit log, e.g. audit/auth_audit.jsonl")
    parser.add_argument("--state", type=Path, default=None, help="state file holding the last hash")
    parser.add_argument("--strict", action="store_true", help="also fail on clear-text phone numbers or emails")
    args = parser.parse_args(argv)

    if not args.log.exists():
        print(f"FAIL: log not found: {args.log}", file=sys.stderr)
        return 2

    try:
        res = verify_audit(args.log, state_path=args.state, strict=args.strict)
    except OSError as e:
        print(f"FAIL: {e}", file=sys.stderr)
        return 2

    _report(res)
    return 0 if res.ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
