"""
Deterministic CBOR (DAG-CBOR subset) encoder and decoder.

Exactly one encoding exists per value, because hashes and signatures are
computed over the encoded bytes:

- Integers use the shortest argument width (direct for 0-23, then 1/2/4/8
  bytes) and must lie within +/-(2**53 - 1).
- Non-integral numbers are always 8-byte IEEE-754 doubles. NaN and infinities
  are rejected.
- Maps have text keys only. Keys sort by encoded length first, then bytewise.
  Entries whose value is UNDEFINED are dropped before the length is written.
- CID links are tag 42 around a byte string of 0x00 + raw CID bytes.

Value model:
    None, bool, int, float, str, bytes-like / Bytes, CidLink,
    list / tuple, dict[str, ...]
    plus the JSON forms {"$link": "b..."} and {"$bytes": "<base64>"}

Decoding is strict: unknown major types, indefinite lengths, non-shortest
arguments, unsupported tags or simple values, non-text keys, duplicate or
out-of-order keys, nesting beyond MAX_NESTING_DEPTH, truncated input and
(for decode()) trailing bytes all raise CborDecodeError.
"""

import math
import struct
from typing import Any

from base_encodings import from_base64, to_base64
from content_id import CidLink, from_string as cid_from_string

MAX_SAFE_INTEGER = 2**53 - 1
MIN_SAFE_INTEGER = -(2**53 - 1)

CID_TAG = 42

# Arrays and maps nested deeper than this are rejected when decoding
MAX_NESTING_DEPTH = 128

MAJOR_UNSIGNED = 0
MAJOR_NEGATIVE = 1
MAJOR_BYTES = 2
MAJOR_TEXT = 3
MAJOR_ARRAY = 4
MAJOR_MAP = 5
MAJOR_TAG = 6
MAJOR_SIMPLE = 7

SIMPLE_FALSE = 0xF4
SIMPLE_TRUE = 0xF5
SIMPLE_NULL = 0xF6
SIMPLE_FLOAT64 = 0xFB


class CborError(ValueError):
    """Base exception for codec errors."""
    pass


class CborEncodeError(CborError):
    """Raised when a value is outside the encodable value model."""
    pass


class CborDecodeError(CborError):
    """Raised when input bytes are not a single well-formed canonical value."""
    pass


class _Undefined:
    """Marker for map entries that are absent rather than null."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNDEFINED"

    def __bool__(self) -> bool:
        return False


UNDEFINED = _Undefined()


class Bytes:
    """
    A byte string in the value model.

    Decoding produces Bytes so byte strings stay distinguishable from text after
    a JSON round trip. Serializes to JSON as {"$bytes": "<unpadded base64>"}.
    """

    __slots__ = ("data",)

    def __init__(self, data: bytes):
        self.data = bytes(data)

    def to_json(self) -> dict[str, str]:
        return {"$bytes": to_base64(self.data)}

    def __bytes__(self) -> bytes:
        return self.data

    def __len__(self) -> int:
        return len(self.data)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Bytes):
            return self.data == other.data
        if isinstance(other, (bytes, bytearray, memoryview)):
            return self.data == bytes(other)
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.data)

    def __repr__(self) -> str:
        return f"Bytes({self.data!r})"


# =============================================================================
# Encoding
# =============================================================================

def _write_type_and_argument(out: bytearray, major: int, arg: int) -> None:
    head = major << 5
    if arg < 24:
        out.append(head | arg)
    elif arg < 0x100:
        out.append(head | 24)
        out.append(arg)
    elif arg < 0x10000:
        out.append(head | 25)
        out += struct.pack(">H", arg)
    elif arg < 0x100000000:
        out.append(head | 26)
        out += struct.pack(">I", arg)
    else:
        out.append(head | 27)
        out += struct.pack(">Q", arg)


def _write_integer(out: bytearray, value: int) -> None:
    if value > MAX_SAFE_INTEGER or value < MIN_SAFE_INTEGER:
        raise CborEncodeError("can't encode numbers beyond safe integer range")

    if value < 0:
        _write_type_and_argument(out, MAJOR_NEGATIVE, -value - 1)
    else:
        _write_type_and_argument(out, MAJOR_UNSIGNED, value)


def _write_float(out: bytearray, value: float) -> None:
    if math.isnan(value):
        raise CborEncodeError("NaN values not supported")

    if value > MAX_SAFE_INTEGER or value < MIN_SAFE_INTEGER:
        raise CborEncodeError("can't encode numbers beyond safe integer range")

    # Integral floats are numbers like any other integer
    if value.is_integer():
        _write_integer(out, int(value))
        return

    out.append(SIMPLE_FLOAT64)
    out += struct.pack(">d", value)


def _encode_text(value: str) -> bytes:
    try:
        return value.encode("utf-8")
    except UnicodeEncodeError as e:
        raise CborEncodeError(f"string is not valid unicode: {e}") from e


def _write_text(out: bytearray, value: str) -> None:
    encoded = _encode_text(value)
    _write_type_and_argument(out, MAJOR_TEXT, len(encoded))
    out += encoded


def _write_bytes(out: bytearray, value: bytes) -> None:
    _write_type_and_argument(out, MAJOR_BYTES, len(value))
    out += value


def _write_cid(out: bytearray, raw: bytes) -> None:
    _write_type_and_argument(out, MAJOR_TAG, CID_TAG)
    _write_type_and_argument(out, MAJOR_BYTES, len(raw) + 1)
    out.append(0x00)
    out += raw


def ordered_map_entries(value: dict[str, Any]) -> list[tuple[bytes, Any]]:
    """
    Return (encoded key, value) pairs in canonical order.

    Shorter keys sort first; keys of equal length sort bytewise ascending.
    Entries whose value is UNDEFINED are dropped.
    """
    entries = []
    for key, item in value.items():
        if not isinstance(key, str):
            raise CborEncodeError(f"map keys must be strings; got {type(key).__name__}")
        if item is UNDEFINED:
            continue
        entries.append((_encode_text(key), item))

    entries.sort(key=lambda entry: (len(entry[0]), entry[0]))
    return entries


def _write_map(out: bytearray, value: dict[str, Any]) -> None:
    entries = ordered_map_entries(value)
    _write_type_and_argument(out, MAJOR_MAP, len(entries))

    for key, item in entries:
        _write_type_and_argument(out, MAJOR_TEXT, len(key))
        out += key
        _write_value(out, item)


def _write_value(out: bytearray, value: Any) -> None:
    # bool before int: bool is an int subclass
    if value is None:
        out.append(SIMPLE_NULL)
    elif value is True:
        out.append(SIMPLE_TRUE)
    elif value is False:
        out.append(SIMPLE_FALSE)
    elif isinstance(value, int):
        _write_integer(out, value)
    elif isinstance(value, float):
        _write_float(out, value)
    elif isinstance(value, str):
        _write_text(out, value)
    elif isinstance(value, (bytes, bytearray, memoryview)):
        _write_bytes(out, bytes(value))
    elif isinstance(value, Bytes):
        _write_bytes(out, value.data)
    elif isinstance(value, CidLink):
        _write_cid(out, value.bytes)
    elif isinstance(value, (list, tuple)):
        _write_type_and_argument(out, MAJOR_ARRAY, len(value))
        for item in value:
            _write_value(out, item)
    elif isinstance(value, dict):
        if "$link" in value:
            link = value["$link"]
            if not isinstance(link, str):
                raise CborEncodeError("unexpected cid-link value")
            _write_cid(out, cid_from_string(link).bytes)
        elif "$bytes" in value:
            data = value["$bytes"]
            if not isinstance(data, str):
                raise CborEncodeError("unexpected bytes value")
            try:
                _write_bytes(out, from_base64(data))
            except ValueError as e:
                raise CborEncodeError(str(e)) from e
        else:
            _write_map(out, value)
    else:
        raise CborEncodeError(f"unsupported type: {type(value).__name__}")


def encode(value: Any) -> bytes:
    """
    Encode a value to canonical CBOR.

    Raises:
        CborEncodeError: If the value is outside the value model
    """
    out = bytearray()
    _write_value(out, value)
    return bytes(out)


# =============================================================================
# Decoding
# =============================================================================

class _Reader:
    """Cursor over the input buffer with bounds checking."""

    __slots__ = ("buf", "pos")

    def __init__(self, buf: bytes):
        self.buf = buf
        self.pos = 0

    def take(self, length: int) -> bytes:
        end = self.pos + length
        if end > len(self.buf):
            raise CborDecodeError(
                f"unexpected end of input (needed {length} bytes at offset {self.pos})"
            )
        chunk = self.buf[self.pos:end]
        self.pos = end
        return chunk

    def byte(self) -> int:
        if self.pos >= len(self.buf):
            raise CborDecodeError(f"unexpected end of input at offset {self.pos}")
        value = self.buf[self.pos]
        self.pos += 1
        return value


def _read_argument(reader: _Reader, info: int) -> int:
    if info < 24:
        return info

    if info == 24:
        value = reader.byte()
        minimum = 24
    elif info == 25:
        value = struct.unpack(">H", reader.take(2))[0]
        minimum = 0x100
    elif info == 26:
        value = struct.unpack(">I", reader.take(4))[0]
        minimum = 0x10000
    elif info == 27:
        value = struct.unpack(">Q", reader.take(8))[0]
        minimum = 0x100000000
        if value > MAX_SAFE_INTEGER:
            raise CborDecodeError("can't decode integers beyond safe integer range")
    elif info == 31:
        raise CborDecodeError("indefinite-length items are not allowed")
    else:
        raise CborDecodeError(f"invalid argument encoding; got {info}")

    if value < minimum:
        raise CborDecodeError(f"argument {value} is not minimally encoded")

    return value


def _read_text(reader: _Reader, length: int) -> str:
    try:
        return reader.take(length).decode("utf-8")
    except UnicodeDecodeError as e:
        raise CborDecodeError(f"invalid utf-8 in text string: {e}") from e


def _read_map(reader: _Reader, length: int, depth: int) -> dict[str, Any]:
    # A plain dict has no prototype chain, so a "__proto__" key is stored
    # like any other key
    result: dict[str, Any] = {}
    previous: bytes | None = None

    for _ in range(length):
        prelude = reader.byte()
        major, info = prelude >> 5, prelude & 0x1F
        if major != MAJOR_TEXT:
            raise CborDecodeError(f"expected map to only have string keys; got type {major}")

        raw_key = reader.take(_read_argument(reader, info))
        if previous is not None:
            if raw_key == previous:
                raise CborDecodeError(f"duplicate map key {raw_key!r}")
            if (len(raw_key), raw_key) < (len(previous), previous):
                raise CborDecodeError(f"map key {raw_key!r} is out of canonical order")
        previous = raw_key

        try:
            key = raw_key.decode("utf-8")
        except UnicodeDecodeError as e:
            raise CborDecodeError(f"invalid utf-8 in map key: {e}") from e

        result[key] = _read_value(reader, depth + 1)

    return result


def _read_cid(reader: _Reader) -> CidLink:
    prelude = reader.byte()
    major, info = prelude >> 5, prelude & 0x1F
    if major != MAJOR_BYTES:
        raise CborDecodeError(f"expected cid-link to be type 2 (bytes); got type {major}")

    data = reader.take(_read_argument(reader, info))
    if len(data) < 2 or data[0] != 0x00:
        raise CborDecodeError("cid-link is missing its 0x00 multibase prefix")

    return CidLink(data[1:])


def _read_value(reader: _Reader, depth: int = 0) -> Any:
    if depth > MAX_NESTING_DEPTH:
        raise CborDecodeError(f"too deeply nested (limit {MAX_NESTING_DEPTH})")

    prelude = reader.byte()
    major, info = prelude >> 5, prelude & 0x1F

    if major == MAJOR_SIMPLE:
        if info == 20:
            return False
        if info == 21:
            return True
        if info == 22:
            return None
        if info == 27:
            return struct.unpack(">d", reader.take(8))[0]
        raise CborDecodeError(f"invalid simple value; got {info}")

    arg = _read_argument(reader, info)

    if major == MAJOR_UNSIGNED:
        return arg
    if major == MAJOR_NEGATIVE:
        return -1 - arg
    if major == MAJOR_BYTES:
        return Bytes(reader.take(arg))
    if major == MAJOR_TEXT:
        return _read_text(reader, arg)
    if major == MAJOR_ARRAY:
        return [_read_value(reader, depth + 1) for _ in range(arg)]
    if major == MAJOR_MAP:
        return _read_map(reader, arg, depth)

    # MAJOR_TAG
    if arg == CID_TAG:
        return _read_cid(reader)
    raise CborDecodeError(f"unsupported tag; got {arg}")


def decode_first(buf: bytes) -> tuple[Any, bytes]:
    """
    Decode the first value in `buf`.

    Returns:
        Tuple of (value, remaining bytes)
    """
    reader = _Reader(bytes(buf))
    value = _read_value(reader)
    return value, reader.buf[reader.pos:]


def decode(buf: bytes) -> Any:
    """
    Decode exactly one value.

    Raises:
        CborDecodeError: If the input is malformed or has trailing bytes
    """
    value, remainder = decode_first(buf)
    if remainder:
        raise CborDecodeError("decoded value contains remainder")
    return value
