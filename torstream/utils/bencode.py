"""
Bencode decoding.

Values decode to ``int``, ``bytes``, ``list`` and ``dict`` (bytes keys).
Every reader takes ``(buffer, offset)`` and returns the position just past
the value, which lets callers walk a buffer without materializing it
(see :func:`skip`) and recover exact byte ranges for hashing.
"""
from typing import Any, Tuple

from torstream.core.errors import InvalidEncoding

_DIGITS = b"0123456789"
_DIGITS_SET = {bytes([c]) for c in _DIGITS}

# Deepest list/dict nesting accepted by decode and skip.
MAX_DEPTH = 256


def _check_depth(depth: int, offset: int) -> None:
    if depth > MAX_DEPTH:
        raise InvalidEncoding(f"Nesting deeper than {MAX_DEPTH} levels at offset {offset}")


def _need(buffer: bytes, offset: int) -> None:
    if offset >= len(buffer):
        raise InvalidEncoding(f"Unexpected end of data at offset {offset}")


def _read_int(buffer: bytes, offset: int) -> Tuple[int, int]:
    # buffer[offset] == b"i"
    end = buffer.find(b"e", offset + 1)
    if end == -1:
        raise InvalidEncoding(f"Unterminated integer at offset {offset}")
    raw = buffer[offset + 1:end]
    digits = raw[1:] if raw[:1] == b"-" else raw
    if not digits or any(c not in _DIGITS for c in digits):
        raise InvalidEncoding(f"Invalid integer {raw!r} at offset {offset}")
    return int(raw), end + 1


def _read_length(buffer: bytes, offset: int) -> Tuple[int, int]:
    colon = buffer.find(b":", offset)
    if colon == -1:
        raise InvalidEncoding(f"Missing ':' after string length at offset {offset}")
    raw = buffer[offset:colon]
    if not raw or any(c not in _DIGITS for c in raw):
        raise InvalidEncoding(f"Invalid string length {raw[:20]!r} at offset {offset}")
    length = int(raw)
    start = colon + 1
    if start + length > len(buffer):
        raise InvalidEncoding(f"String length {length} exceeds remaining data at offset {offset}")
    return start, start + length


def _read_bytes(buffer: bytes, offset: int) -> Tuple[bytes, int]:
    start, end = _read_length(buffer, offset)
    return bytes(buffer[start:end]), end


def decode(buffer: bytes, offset: int = 0, depth: int = 0) -> Tuple[Any, int]:
    """Decode one value at ``offset``. Returns ``(value, next_offset)``."""
    _check_depth(depth, offset)
    _need(buffer, offset)
    lead = buffer[offset:offset + 1]

    if lead == b"i":
        return _read_int(buffer, offset)

    if lead in _DIGITS_SET:
        return _read_bytes(buffer, offset)

    if lead == b"l":
        items = []
        pos = offset + 1
        while True:
            _need(buffer, pos)
            if buffer[pos:pos + 1] == b"e":
                return items, pos + 1
            value, pos = decode(buffer, pos, depth + 1)
            items.append(value)

    if lead == b"d":
        result = {}
        pos = offset + 1
        while True:
            _need(buffer, pos)
            if buffer[pos:pos + 1] == b"e":
                return result, pos + 1
            key, pos = decode_key(buffer, pos)
            value, pos = decode(buffer, pos, depth + 1)
            result[key] = value

    raise InvalidEncoding(f"Unrecognized token {lead!r} at offset {offset}")


def decode_key(buffer: bytes, offset: int) -> Tuple[bytes, int]:
    """Dictionary keys must be byte strings."""
    _need(buffer, offset)
    if buffer[offset:offset + 1] not in _DIGITS_SET:
        raise InvalidEncoding(f"Dictionary key must be a byte string at offset {offset}")
    return _read_bytes(buffer, offset)


def skip(buffer: bytes, offset: int = 0, depth: int = 0) -> int:
    """Walk past one value without building it. Returns the next offset."""
    _check_depth(depth, offset)
    _need(buffer, offset)
    lead = buffer[offset:offset + 1]

    if lead == b"i":
        return _read_int(buffer, offset)[1]

    if lead in _DIGITS_SET:
        return _read_length(buffer, offset)[1]

    if lead in (b"l", b"d"):
        pos = offset + 1
        while True:
            _need(buffer, pos)
            if buffer[pos:pos + 1] == b"e":
                return pos + 1
            if lead == b"d":
                pos = decode_key(buffer, pos)[1]
            pos = skip(buffer, pos, depth + 1)

    raise InvalidEncoding(f"Unrecognized token {lead!r} at offset {offset}")


def bdecode(buffer: bytes) -> Any:
    """Decode a complete buffer; trailing bytes are an error."""
    value, end = decode(buffer, 0)
    if end != len(buffer):
        raise InvalidEncoding(f"Trailing data after offset {end}")
    return value

