"""Helpers for moving file content through the Git Data API."""
from __future__ import annotations

import base64
import binascii


def encode_content(text: str) -> str:
    """Return ``text`` as base64 over its UTF-8 bytes.

    The blob endpoint accepts base64 payloads; encoding the UTF-8 byte sequence
    (rather than individual characters) keeps multi-byte characters such as
    emoji and combining marks intact.
    """

    if not isinstance(text, str):
        raise TypeError(f"Expected text content, got {type(text).__name__}")
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def decode_content(encoded: str) -> str:
    """Inverse of :func:`encode_content`.

    GitHub wraps base64 payloads at 60 columns, so embedded newlines are ignored.
    """

    compact = "".join(encoded.split())
    try:
        raw = base64.b64decode(compact, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"Content is not valid base64: {exc}") from exc

    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"Content is not valid UTF-8: {exc}") from exc


__all__ = ["decode_content", "encode_content"]
