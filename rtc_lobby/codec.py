"""Wire codec.

Binary mode: JSON text compressed with raw deflate, optionally primed with a
preset dictionary. Text mode: plain JSON, for HTTP bodies and WebSocket text
frames.
"""

from __future__ import annotations

import json
import zlib
from dataclasses import dataclass
from typing import Any, Optional, Union

from .errors import Error, ErrorKind, display_any


# Raw deflate: no zlib header or checksum.
_RAW_WBITS = -zlib.MAX_WBITS


@dataclass(frozen=True)
class SerializeOptions:
    level: int = 6
    dictionary: Optional[bytes] = None


DEFAULT_OPTIONS = SerializeOptions()


def _deflate_raw(text: str, level: int, dictionary: Optional[bytes]) -> Optional[bytes]:
    try:
        if dictionary:
            compressor = zlib.compressobj(level, zlib.DEFLATED, _RAW_WBITS, zdict=dictionary)
        else:
            compressor = zlib.compressobj(level, zlib.DEFLATED, _RAW_WBITS)
        return compressor.compress(text.encode("utf-8")) + compressor.flush()
    except (zlib.error, ValueError):
        return None


def _inflate_raw(data: bytes, dictionary: Optional[bytes]) -> Optional[str]:
    try:
        if dictionary:
            decompressor = zlib.decompressobj(_RAW_WBITS, zdict=dictionary)
        else:
            decompressor = zlib.decompressobj(_RAW_WBITS)
        raw = decompressor.decompress(data) + decompressor.flush()
        if not decompressor.eof:
            return None
        return raw.decode("utf-8")
    except (zlib.error, ValueError, UnicodeDecodeError):
        return None


def _dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def serialize(value: Any, options: Optional[SerializeOptions] = None) -> Union[bytes, Error]:
    if value is None:
        return b""
    opts = options or DEFAULT_OPTIONS
    try:
        text = _dumps(value)
    except (TypeError, ValueError):
        text = None
    compressed = _deflate_raw(text, opts.level, opts.dictionary) if text is not None else None
    if compressed is None:
        return Error(ErrorKind.SERIALIZE, f"Could not serialize data {display_any(value)}")
    return compressed


def deserialize(data: Union[bytes, bytearray, memoryview], options: Optional[SerializeOptions] = None) -> Any:
    """Inverse of `serialize`. Returns the decoded value or an `Error`."""

    raw = bytes(data)
    if not raw:
        return None
    opts = options or DEFAULT_OPTIONS
    text = _inflate_raw(raw, opts.dictionary)
    if text is not None:
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            pass
    return Error(ErrorKind.DESERIALIZE, f"Could not deserialize data '{display_any(raw)}'")


def stringify(value: Any) -> Union[str, Error]:
    if value is None:
        return ""
    try:
        return _dumps(value)
    except (TypeError, ValueError):
        return Error(ErrorKind.SERIALIZE, f"Could not stringify data {display_any(value)}")


def parse(text: Union[str, bytes]) -> Any:
    if isinstance(text, (bytes, bytearray)):
        try:
            text = bytes(text).decode("utf-8")
        except UnicodeDecodeError:
            return Error(ErrorKind.DESERIALIZE, f"Could not parse data '{display_any(text)}'")
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return Error(ErrorKind.DESERIALIZE, f"Could not parse data '{display_any(text)}'")
