"""Worker name rules."""

from __future__ import annotations

import re

from .errors import NameValidationError

MAX_NAME_LENGTH = 64

# ASCII word characters plus Japanese punctuation, kana, and CJK ideographs
_ALLOWED_CHAR = r"A-Za-z0-9_\-\u3000-\u303f\u3040-\u309f\u30a0-\u30ff\u4e00-\u9fff"
_NAME_RE = re.compile(f"^[{_ALLOWED_CHAR}]+$")
_INVALID_CHAR_RE = re.compile(f"[^{_ALLOWED_CHAR}]")


def validate_name(name: str) -> str:
    """Return ``name`` stripped of surrounding whitespace, or raise."""
    name = name.strip()
    if not name:
        raise NameValidationError(name, "name is empty")
    if len(name) > MAX_NAME_LENGTH:
        raise NameValidationError(
            name, f"exceeds maximum length of {MAX_NAME_LENGTH} characters",
        )
    if not _NAME_RE.match(name):
        bad = "".join(sorted(set(_INVALID_CHAR_RE.findall(name))))
        raise NameValidationError(name, f"contains invalid characters: {bad!r}")
    return name


def default_name(worker_id: int) -> str:
    return f"worker-{worker_id}"
