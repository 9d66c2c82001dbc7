"""Centralized ID generation and path helpers for scriptserve."""

from __future__ import annotations

import os
import uuid
from email.utils import formatdate
from pathlib import Path


def generate_session_id() -> str:
    """Generate a unique WebSocket session ID.

    Returns:
        A canonical 36-character UUID4 string (122 random bits).
    """
    return str(uuid.uuid4())


def resolve_within(root: str | os.PathLike[str], relative: str) -> Path | None:
    """Join *relative* onto *root* and canonicalize the result.

    Returns ``None`` when the canonical path escapes *root*, so ``..``
    segments, absolute paths and symlinks pointing outside are all refused.
    Comparison is by whole path components, which keeps ``assets2`` from
    matching a root of ``assets``.
    """
    base = Path(root).resolve()
    candidate = (base / relative.lstrip("/\\")).resolve()
    try:
        candidate.relative_to(base)
    except ValueError:
        return None
    return candidate


def http_date(timestamp: float | None = None) -> str:
    """Format *timestamp* (default: now) as an RFC 7231 HTTP date."""
    return formatdate(timestamp, usegmt=True)
