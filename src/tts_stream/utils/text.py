"""
Content hashing and light text helpers.

Hashes are the cache identity of a piece of text: two requests share a
job, a whole-text cache entry or a material plan exactly when their hashes
match. By default the raw text is hashed, so chunk offsets computed on the
text stay valid for everything keyed by that hash. With
``collapse_whitespace`` the text is reduced to single spaces before hashing
(and before chunking), which merges requests that only differ in layout.

Example:
    >>> content_hash("Hello  world.")
    'b7c0...'
    >>> normalize_whitespace("  Hello \\n\\n world. ")
    'Hello world.'
"""
from __future__ import annotations

import hashlib
import re

# Bump when hashing input preparation changes; old cache rows then miss.
HASH_VERSION = "v1"

_WS_RE = re.compile(r"\s+")


def normalize_whitespace(text: str) -> str:
    """Strip and collapse every whitespace run to a single space."""
    return _WS_RE.sub(" ", text).strip()


def prepare_text(text: str, collapse_whitespace: bool = False) -> str:
    """The exact text that gets hashed and chunked."""
    return normalize_whitespace(text) if collapse_whitespace else text


def content_hash(text: str) -> str:
    """SHA-256 hex digest of ``text`` (UTF-8)."""
    return hashlib.sha256(f"{HASH_VERSION}|{text}".encode("utf-8")).hexdigest()


def preview(text: str, limit: int = 60) -> str:
    """Single-line preview for log fields."""
    flat = normalize_whitespace(text)
    if len(flat) <= limit:
        return flat
    return flat[: max(0, limit - 3)] + "..."
