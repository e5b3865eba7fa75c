"""
guest_house/audit.py

Append-only record of sign-in decisions, one JSON object per line.

Lines are chained so a reader can detect edits, drops and reordering:

  link_0 = 64 zero hex digits
  link_n = SHA3-256( bytes.fromhex(link_{n-1}) || canonical_json(event) )

where `event` is the line without its `prev_hash` / `hash` members.

The last link is mirrored to auth_audit.state so a truncated log is caught too.
Writers serialize on an flock'd sidecar file. Phone numbers never reach the
log in clear; `record()` stores their SHA3-256 instead.
"""

from __future__ import annotations

import fcntl
import hashlib
import json
import os
import time
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Tuple

GENESIS_HASH = "0" * 64

LOG_NAME = "auth_audit.jsonl"
STATE_NAME = "auth_audit.state"
LOCK_NAME = "auth_audit.lock"

CHAIN_FIELDS = ("prev_hash", "hash")
COMMON_FIELDS = ("session_id", "phone_number", "user_id", "check_id", "channel", "request_ip")


def canonical_json_bytes(obj: Dict[str, Any]) -> bytes:
    """Sorted keys, compact separators, UTF-8."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def sha3_256_hex(data: bytes) -> str:
    return hashlib.sha3_256(data).hexdigest()


def strip_chain(event: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in event.items() if k not in CHAIN_FIELDS}


def chain_hash(prev_hash: str, event: Dict[str, Any]) -> str:
    return sha3_256_hex(bytes.fromhex(prev_hash) + canonical_json_bytes(strip_chain(event)))


def build_common(
    *,
    event: str,
    session_id: Optional[str] = None,
    phone_number: Optional[str] = None,
    user_id: Optional[str] = None,
    check_id: Optional[str] = None,
    channel: Optional[str] = None,
    request_ip: Optional[str] = None,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    """Fields every sign-in event may carry. Empty values are left out."""
    ts = time.time() if now is None else now
    entry: Dict[str, Any] = {"ts": int(ts), "event": event}
    if phone_number:
        entry["phone_sha3_256"] = sha3_256_hex(phone_number.encode("utf-8"))
    optional = {
        "session_id": session_id,
        "user_id": user_id,
        "check_id": check_id,
        "channel": channel,
        "request_ip": request_ip,
    }
    entry.update({k: v for k, v in optional.items() if v})
    return entry


class AuditLog:
    def __init__(self, directory: Path | str):
        self.directory = Path(directory)
        self.log_path = self.directory / LOG_NAME
        self.state_path = self.directory / STATE_NAME
        self.lock_path = self.directory / LOCK_NAME

    def _last_link(self) -> str:
        # lock held by caller; an unreadable state restarts from genesis
        try:
            value = self.state_path.read_text(encoding="utf-8").strip().lower()
        except FileNotFoundError:
            return GENESIS_HASH
        if len(value) == 64 and all(c in "0123456789abcdef" for c in value):
            return value
        return GENESIS_HASH

    def append(self, event: Dict[str, Any]) -> str:
        """Chain `event` onto the log and return its hash. Caller-supplied chain fields are ignored."""
        self.directory.mkdir(parents=True, exist_ok=True)
        body = strip_chain(event)

        with open(self.lock_path, "a+", encoding="utf-8") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                prev_hash = self._last_link()
                link = chain_hash(prev_hash, body)
                line = canonical_json_bytes({**body, "prev_hash": prev_hash, "hash": link})

                with open(self.log_path, "ab") as f:
                    f.write(line + b"\n")
                    f.flush()
                    os.fsync(f.fileno())
                self.state_path.write_text(link + "\n", encoding="utf-8")
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

        return link

    def record(self, event: str, *, now: Optional[float] = None, **fields: Any) -> str:
        """build_common() for the known keys, anything else (reason, detail, ...) verbatim."""
        common = {k: fields.pop(k) for k in COMMON_FIELDS if k in fields}
        return self.append({**build_common(event=event, now=now, **common), **fields})

    def verify(self) -> bool:
        return verify_log_chain(self.log_path)


def iter_log(path: Path) -> Iterator[Tuple[int, Dict[str, Any]]]:
    """(line number, event) for each non-blank line. ValueError on a line that is not a JSON object."""
    with path.open("r", encoding="utf-8") as f:
        for lineno, raw in enumerate(f, start=1):
            raw = raw.strip()
            if not raw:
                continue
            try:
                obj = json.loads(raw)
            except ValueError as e:
                raise ValueError(f"{path}:{lineno}: invalid JSON: {e}") from e
            if not isinstance(obj, dict):
                raise ValueError(f"{path}:{lineno}: JSON root must be an object")
            yield lineno, obj


def verify_log_chain(path: Path) -> bool:
    """True if every link of the log at `path` holds. A missing log is trivially intact."""
    if not path.exists():
        return True

    prev = GENESIS_HASH
    try:
        for _, event in iter_log(path):
            if event.get("prev_hash") != prev or event.get("hash") != chain_hash(prev, event):
                return False
            prev = event["hash"]
    except ValueError:
        return False
    return True
