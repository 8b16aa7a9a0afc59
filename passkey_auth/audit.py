"""
passkey_auth/audit.py

Tamper-evident ceremony audit log.

We append one JSON object per line (JSONL). Each event is hash-chained:

  H_0 = "0"*64
  H_n = SHA3-256( bytes.fromhex(H_{n-1}) || canonical_json(event_without_hash_fields) )

Each line stores:
  - prev_hash: hex string (64 chars)
  - hash:      hex string (64 chars)

Properties:
- Any modification, deletion, or reordering of log lines breaks the chain.
- Chain state is persisted in <dir>/ceremony_audit.state
- Uses file locking (flock) to keep chain consistent under concurrency
  (uvicorn workers share the directory).

Every ceremony outcome lands here: "issued" for begin, "approved" for a
verified finish, "denied" for any rejection (with the precise reason that the
HTTP response deliberately hides), "error" for store / primitive failures.
A "possible_clone" denial is the signal operators investigate.
"""

from __future__ import annotations

import json
import os
import time
import hashlib
from pathlib import Path
from typing import Any, Dict, Optional, Union

# Linux file lock (works in Docker/Linux)
import fcntl


GENESIS_HASH = "0" * 64  # 32 bytes hex

LOG_NAME = "ceremony_audit.jsonl"
STATE_NAME = "ceremony_audit.state"
LOCK_NAME = "ceremony_audit.lock"


# -----------------------------------------------------------------------------
# Canonical JSON
# -----------------------------------------------------------------------------
def canonical_json_bytes(obj: Dict[str, Any]) -> bytes:
    """
    Produce deterministic JSON bytes for hashing and logging:
    - sorted keys
    - no whitespace
    - UTF-8
    """
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def sha3_256_hex(data: bytes) -> str:
    return hashlib.sha3_256(data).hexdigest()


def chain_hash(prev_hash: str, event: Dict[str, Any]) -> str:
    """Hash of one link; event must not contain prev_hash/hash."""
    return sha3_256_hex(bytes.fromhex(prev_hash) + canonical_json_bytes(event))


# -----------------------------------------------------------------------------
# Event helpers
# -----------------------------------------------------------------------------
def build_common(
    *,
    ceremony: str,
    session_id: Optional[str] = None,
    user_id: Optional[str] = None,
    credential_id: Optional[bytes] = None,
    challenge: Optional[bytes] = None,
    origin: Optional[str] = None,
    rp_id: Optional[str] = None,
    request_ip: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Build common audit fields. Keep this "boring" and stable.

    Note:
    - We store digests/lengths of byte blobs (credential ids, challenges)
      rather than raw bytes, so logs stay small and less sensitive.
    """
    out: Dict[str, Any] = {
        "ts": int(time.time()),
        "ceremony": ceremony,
    }

    if session_id:
        # session ids are bearer secrets; log a digest
        out["session"] = sha3_256_hex(session_id.encode("utf-8"))[:16]
    if user_id:
        out["user_id"] = user_id
    if origin:
        out["origin"] = origin
    if rp_id:
        out["rp_id"] = rp_id
    if request_ip:
        out["request_ip"] = request_ip
    if user_agent:
        out["user_agent"] = user_agent[:200]

    if credential_id is not None:
        out["credential_len"] = len(credential_id)
        out["credential_sha3_256"] = sha3_256_hex(credential_id)

    if challenge is not None:
        out["challenge_len"] = len(challenge)
        out["challenge_sha3_256"] = sha3_256_hex(challenge)

    return out


class AuditLog:
    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)
        self.log_path = self.directory / LOG_NAME
        self.state_path = self.directory / STATE_NAME
        self.lock_path = self.directory / LOCK_NAME

    def _read_last_hash_unlocked(self) -> str:
        """
        Read last hash from the state file. Caller must hold lock.
        Returns GENESIS_HASH if state missing/empty.
        """
        if not self.state_path.exists():
            return GENESIS_HASH
        s = self.state_path.read_text(encoding="utf-8").strip()
        if len(s) != 64:
            return GENESIS_HASH
        try:
            bytes.fromhex(s)
        except ValueError:
            return GENESIS_HASH
        return s.lower()

    def _write_last_hash_unlocked(self, h: str) -> None:
        self.state_path.write_text(h + "\n", encoding="utf-8")

    def append_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """
        Append one event to the audit log with hash chaining.

        The function:
        - locks the lock file
        - reads prev hash
        - computes next hash over canonical event (excluding hash fields)
        - writes JSONL line containing prev_hash + hash
        - updates state file

        Returns the stored event (with chain fields).
        """
        self.directory.mkdir(parents=True, exist_ok=True)

        # We lock a dedicated lock file so it works even if log/state don't exist yet.
        with open(self.lock_path, "a+", encoding="utf-8") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                prev_hash = self._read_last_hash_unlocked()

                # Never allow callers to inject their own chain fields.
                e = dict(event)
                e.pop("prev_hash", None)
                e.pop("hash", None)

                stored = dict(e)
                stored["prev_hash"] = prev_hash
                stored["hash"] = chain_hash(prev_hash, e)

                line = canonical_json_bytes(stored) + b"\n"

                with open(self.log_path, "ab") as f:
                    f.write(line)
                    f.flush()
                    os.fsync(f.fileno())

                self._write_last_hash_unlocked(stored["hash"])
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

        return stored

    def verify_chain(self) -> bool:
        """
        Verify the hash chain of the log file.
        Returns True if valid (or absent), False otherwise.
        """
        if not self.log_path.exists():
            return True

        prev = GENESIS_HASH
        with open(self.log_path, "rb") as f:
            for raw_line in f:
                raw_line = raw_line.strip()
                if not raw_line:
                    continue
                try:
                    obj = json.loads(raw_line.decode("utf-8"))
                except (UnicodeDecodeError, json.JSONDecodeError):
                    return False

                if obj.get("prev_hash") != prev:
                    return False

                line_hash = obj.pop("hash", None)
                obj.pop("prev_hash", None)
                if chain_hash(prev, obj) != line_hash:
                    return False

                prev = line_hash

        return True
