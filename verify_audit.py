#!/usr/bin/env python3
"""
verify_audit.py: verify the tamper-evident ceremony audit log (JSONL).

Checks, line by line:
- JSON parsing (one object per line)
- hash chaining: prev_hash links to the previous line's hash, and
      hash = SHA3-256( bytes.fromhex(prev_hash) || canonical_json(event_without_chain_fields) )
- event shape: ts / ceremony / result / reason present, digest fields are 64-hex
- optional state file (ceremony_audit.state) equals the last hash

Exit codes:
- 0: OK
- 1: Verification failed
"""

from __future__ import annotations

import argparse
import json
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple

from passkey_auth.audit import GENESIS_HASH, LOG_NAME, STATE_NAME, chain_hash

REQUIRED_FIELDS = ("ts", "ceremony", "result", "reason")
DIGEST_FIELDS = ("credential_sha3_256", "challenge_sha3_256")
KNOWN_RESULTS = ("issued", "approved", "denied", "error")


@dataclass
class VerifyResult:
    ok: bool
    lines: int
    denied: int
    clones: int
    last_hash: Optional[str]
    message: str


def _is_hex64(s: Any) -> bool:
    if not isinstance(s, str) or len(s) != 64:
        return False
    try:
        int(s, 16)
        return True
    except ValueError:
        return False


def _iter_jsonl(path: Path) -> Iterable[Tuple[int, Dict[str, Any]]]:
    """
    Yields: (line_number starting at 1, parsed_object)
    """
    with path.open("r", encoding="utf-8") as f:
        for idx, raw in enumerate(f, start=1):
            line = raw.strip()
            if not line:
                continue
            try:
                obj = json.loads(line)
            except json.JSONDecodeError as e:
                raise ValueError(f"{path}:{idx}: invalid JSON: {e}") from e
            if not isinstance(obj, dict):
                raise ValueError(f"{path}:{idx}: JSON root must be object/dict")
            yield idx, obj


def _check_shape(event: Dict[str, Any]) -> Optional[str]:
    for k in REQUIRED_FIELDS:
        if k not in event:
            return f"missing field '{k}'"
    if event["result"] not in KNOWN_RESULTS:
        return f"unknown result '{event['result']}'"
    for k in DIGEST_FIELDS:
        if k in event and not _is_hex64(event[k]):
            return f"'{k}' is not 64-hex"
    return None


def verify_audit(
    jsonl_path: Path,
    state_path: Optional[Path] = None,
    *,
    strict_shape: bool = False,
) -> VerifyResult:
    if not jsonl_path.exists():
        return VerifyResult(False, 0, 0, 0, None, f"Log not found: {jsonl_path}")

    lines = 0
    denied = 0
    clones = 0
    prev = GENESIS_HASH
    last_hash: Optional[str] = None

    def fail(msg: str) -> VerifyResult:
        return VerifyResult(False, lines, denied, clones, last_hash, msg)

    for lineno, event in _iter_jsonl(jsonl_path):
        lines += 1
        where = f"{jsonl_path}:{lineno}"

        if "hash" not in event or "prev_hash" not in event:
            return fail(f"{where}: chain requires both 'prev_hash' and 'hash'")

        hash_claimed = event.pop("hash")
        prev_claimed = event.pop("prev_hash")

        if not _is_hex64(prev_claimed):
            return fail(f"{where}: prev_hash is not 64-hex")
        if not _is_hex64(hash_claimed):
            return fail(f"{where}: hash is not 64-hex")

        if prev_claimed != prev:
            return fail(f"{where}: prev_hash mismatch: expected {prev} got {prev_claimed}")

        recomputed = chain_hash(prev_claimed, event)
        if hash_claimed != recomputed:
            return fail(f"{where}: hash mismatch: expected {recomputed} got {hash_claimed}")

        if strict_shape:
            problem = _check_shape(event)
            if problem:
                return fail(f"{where}: {problem}")

        if event.get("result") == "denied":
            denied += 1
        if event.get("reason") == "possible_clone":
            clones += 1

        prev = hash_claimed
        last_hash = hash_claimed

    if state_path is not None:
        if not state_path.exists():
            return fail(f"State file not found: {state_path}")

        state_val = state_path.read_text(encoding="utf-8").strip()
        if not _is_hex64(state_val):
            return fail(f"State file value is not 64-hex: {state_path}")
        if state_val != (last_hash or GENESIS_HASH):
            return fail(f"State mismatch: state={state_val} log_last={last_hash}")

    return VerifyResult(True, lines, denied, clones, last_hash, "OK")


def main(argv=None) -> int:
    p = argparse.ArgumentParser(
        description="Verify passkey ceremony audit log integrity (hash-chained JSONL)."
    )
    p.add_argument(
        "log",
        type=Path,
        nargs="?",
        default=Path("audit") / LOG_NAME,
        help=f"Path to audit JSONL file (default: audit/{LOG_NAME})",
    )
    p.add_argument(
        "--state",
        type=Path,
        default=None,
        help=f"Optional state file containing last hash (e.g. audit/{STATE_NAME})",
    )
    p.add_argument(
        "--strict-shape",
        action="store_true",
        help="Also fail on events missing ts/ceremony/result/reason or with malformed digests.",
    )
    args = p.parse_args(argv)

    try:
        res = verify_audit(args.log, state_path=args.state, strict_shape=args.strict_shape)
    except (OSError, ValueError) as e:
        print(f"FAIL: {e}", file=sys.stderr)
        return 1

    out = sys.stdout if res.ok else sys.stderr
    if res.ok:
        print("OK", file=out)
    else:
        print("FAIL", file=out)
        print(res.message, file=out)
    print(f"lines={res.lines}", file=out)
    print(f"denied={res.denied}", file=out)
    print(f"possible_clones={res.clones}", file=out)
    if res.last_hash:
        print(f"last_hash={res.last_hash}", file=out)
    return 0 if res.ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
