"""Output decoding for child process streams.

Child processes write whatever their locale dictates. UTF-8 and ASCII are
passed through untouched; anything else is detected with charset-normalizer
and transcoded, with the platform's preferred encoding as the last resort.
"""

from __future__ import annotations

import codecs
import locale
import sys

from charset_normalizer import from_bytes
from loguru import logger

_UTF8_NAMES = {"utf_8", "utf-8", "utf8", "ascii"}


def default_encoding(platform: str | None = None) -> str:
    """Encoding used when detection is unavailable or fails."""
    platform = platform or sys.platform
    preferred = locale.getpreferredencoding(False) or ""
    if platform == "win32":
        # Console tools on Windows commonly emit the ANSI code page.
        return preferred or "cp932"
    return preferred or "utf-8"


def detect_encoding(data: bytes) -> str | None:
    """Best guess for the encoding of *data*, or None."""
    try:
        match = from_bytes(data).best()
    except Exception as e:
        logger.debug("Encoding detection failed: {}", e)
        return None
    if match is None:
        return None
    return match.encoding


class OutputDecoder:
    """Incremental bytes-to-text decoder for one output stream."""

    def __init__(self, fallback_encoding: str | None = None):
        if fallback_encoding:
            try:
                codecs.lookup(fallback_encoding)
            except LookupError:
                logger.warning("Unknown fallback encoding {}, using platform default", fallback_encoding)
                fallback_encoding = None
        self.fallback_encoding = fallback_encoding or default_encoding()
        self._pending = b""

    def decode(self, chunk: bytes) -> str:
        data = self._pending + chunk
        self._pending = b""
        if not data:
            return ""

        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as err:
            # A multi-byte sequence cut by the read boundary: keep the tail.
            if err.reason == "unexpected end of data" and err.end == len(data):
                self._pending = data[err.start:]
                return data[:err.start].decode("utf-8")

        return self._transcode(data)

    def flush(self) -> str:
        data, self._pending = self._pending, b""
        if not data:
            return ""
        return self._transcode(data)

    def _transcode(self, data: bytes) -> str:
        encoding = detect_encoding(data)
        if encoding and encoding.lower() not in _UTF8_NAMES:
            try:
                return data.decode(encoding)
            except (LookupError, UnicodeDecodeError) as e:
                logger.debug("Failed to decode output as {}: {}", encoding, e)
        return data.decode(self.fallback_encoding, errors="replace")
