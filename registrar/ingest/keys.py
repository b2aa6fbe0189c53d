from __future__ import annotations

import re
import threading
import time
from dataclasses import dataclass
from secrets import token_hex
from typing import Optional

__all__ = [
    "PROVISIONAL_PREFIX",
    "FinalKey",
    "monotonic_millis",
    "provisional_key",
    "is_provisional_key",
    "sanitize_name",
    "fallback_name",
    "final_key",
]

PROVISIONAL_PREFIX = "LD_INGEST_TEMP_"
MAX_NAME_LENGTH = 120

_UNSAFE = re.compile(r"[^A-Za-z0-9_-]+")
_REPEATS = re.compile(r"_{2,}")

_clock_lock = threading.Lock()
_last_millis = 0


def monotonic_millis() -> int:
    """Wall-clock milliseconds that never repeat or go backwards within this process."""
    global _last_millis
    with _clock_lock:
        now = time.time_ns() // 1_000_000
        if now <= _last_millis:
            now = _last_millis + 1
        _last_millis = now
        return now


@dataclass(slots=True, frozen=True)
class FinalKey:
    """Resolved destination for a reconciled object."""

    folder: str
    name: str

    @property
    def public_id(self) -> str:
        return f"{self.folder}/{self.name}" if self.folder else self.name


def provisional_key(*, millis: Optional[int] = None) -> str:
    """Return a disposable upload key.

    Args:
        millis: Override for the timestamp component, used by tests.

    Returns:
        ``LD_INGEST_TEMP_<millis>_<random>``; the timestamp is process-monotonic
        and the suffix carries 48 random bits, so overlapping items never share a key.
    """
    stamp = millis if millis is not None else monotonic_millis()
    return f"{PROVISIONAL_PREFIX}{stamp}_{token_hex(6)}"


def is_provisional_key(key: str) -> bool:
    return key.rsplit("/", 1)[-1].startswith(PROVISIONAL_PREFIX)


def sanitize_name(raw: str) -> str:
    """Reduce a free-text name to characters every storage backend accepts."""
    cleaned = _UNSAFE.sub("_", raw.strip())
    cleaned = _REPEATS.sub("_", cleaned).strip("_")
    return cleaned[:MAX_NAME_LENGTH]


def fallback_name(agent: str, slot: Optional[int], role: str) -> str:
    slot_part = f"{slot:02d}" if slot is not None else "XX"
    return sanitize_name(f"LD_BIBLE_{agent.upper()}_{slot_part}_{role.upper()}")


def final_key(
    folder: str,
    suggested_name: str,
    *,
    agent: str,
    slot: Optional[int],
    role: str,
    millis: Optional[int] = None,
) -> FinalKey:
    """Compute the permanent key for a reconciled object.

    Args:
        folder: Destination folder, usually the agent's visual bible folder.
        suggested_name: Human-readable name proposed by the classifier; may be empty.
        agent: Resolved agent, used for the fallback name.
        slot: Resolved slot, used for the fallback name.
        role: Classified role, used for the fallback name.
        millis: Override for the timestamp component, used by tests.

    Returns:
        The folder plus a name with a timestamp and random token appended, so two
        items proposing the same readable name still land on distinct keys.
    """
    base = sanitize_name(suggested_name) or fallback_name(agent, slot, role)
    stamp = millis if millis is not None else monotonic_millis()
    return FinalKey(folder=folder.strip("/"), name=f"{base}_{stamp}_{token_hex(3)}")
