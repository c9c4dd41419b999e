from __future__ import annotations

import os
from typing import Any

from .constants import USER_ID_MAX_CHARS


def expand_path(p: str) -> str:
    return os.path.expanduser(os.path.expandvars(p))


def normalize_id(value: Any, *, max_chars: int = USER_ID_MAX_CHARS) -> str | None:
    """Normalize a user or group id, or return None if it is unusable."""
    if not isinstance(value, str):
        return None

    s = value.strip()
    if not s:
        return None

    if max_chars > 0 and len(s) > int(max_chars):
        return None

    # Ids end up in log lines and registry keys.
    if any(ch in s for ch in ("\n", "\r", "\x00")):
        return None

    return s


def fmt_hash(h: Any, *, prefix: int = 12) -> str:
    if isinstance(h, (bytes, bytearray)):
        s = bytes(h).hex()
        return s if prefix <= 0 else s[: min(prefix, len(s))]
    return "-"


def parse_hex(text: str) -> bytes:
    s = str(text).strip().lower()
    if s.startswith("0x"):
        s = s[2:]
    s = "".join(ch for ch in s if not ch.isspace())
    try:
        return bytes.fromhex(s)
    except ValueError as e:
        raise ValueError(f"invalid hex value: {text!r}") from e
