"""
Content identifiers (CIDv1) restricted to the DASL subset.

A CID binds a SHA-256 digest to the codec of the content it addresses:

    [version=1][codec][hash=0x12][varint(digest length)][digest]

Only the raw (0x55) and DAG-CBOR (0x71) codecs and SHA-256 digests are
accepted. The text form is "b" + lowercase unpadded base32 of the raw bytes;
the binary form used inside CBOR tag 42 prefixes the raw bytes with 0x00.

CIDs compare by raw bytes only. The string form is derived and never used as
identity.
"""

import hashlib
from dataclasses import dataclass
from typing import Any

from base_encodings import from_base32, to_base32

CID_VERSION = 1
HASH_SHA256 = 0x12

CODEC_RAW = 0x55
CODEC_DCBOR = 0x71

SUPPORTED_CODECS = (CODEC_RAW, CODEC_DCBOR)

# Varints longer than this can't be represented within 63 bits
MAX_VARINT_BYTES = 9


class CidError(ValueError):
    """Raised when CID bytes or strings can't be parsed."""
    pass


class VarintError(CidError):
    """Raised on unterminated, over-long or negative varints."""
    pass


# =============================================================================
# Unsigned LEB128 varints
# =============================================================================

def varint_length(value: int) -> int:
    """Number of bytes needed to encode `value` as a varint."""
    length = 1
    while value >= 0x80:
        value >>= 7
        length += 1
    return length


def encode_varint(value: int) -> bytes:
    """Encode a non-negative integer as an unsigned LEB128 varint."""
    if value < 0:
        raise VarintError(f"can't encode negative varint ({value})")

    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def decode_varint(buf: bytes, offset: int = 0) -> tuple[int, int]:
    """
    Decode an unsigned LEB128 varint.

    Args:
        buf: Buffer to read from
        offset: Position of the first varint byte

    Returns:
        Tuple of (value, number of bytes consumed)

    Raises:
        VarintError: If the varint runs past the buffer or is too long
    """
    value = 0
    shift = 0
    pos = offset

    while True:
        if pos >= len(buf):
            raise VarintError("unterminated varint")
        if pos - offset >= MAX_VARINT_BYTES:
            raise VarintError("varint too long")

        byte = buf[pos]
        value |= (byte & 0x7F) << shift
        pos += 1

        if not byte & 0x80:
            return value, pos - offset
        shift += 7


# =============================================================================
# CID
# =============================================================================

@dataclass(frozen=True)
class Digest:
    """Multihash digest of a CID."""
    codec: int
    contents: bytes


@dataclass(frozen=True, eq=False)
class Cid:
    """
    A decoded CIDv1.

    Attributes:
        version: Always 1
        codec: CODEC_RAW or CODEC_DCBOR
        digest: The SHA-256 digest and its multihash code
        bytes: Raw CID bytes, the canonical identity of the CID
    """
    version: int
    codec: int
    digest: Digest
    bytes: bytes

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Cid):
            return NotImplemented
        return self.bytes == other.bytes

    def __hash__(self) -> int:
        return hash(self.bytes)

    def __str__(self) -> str:
        return to_string(self)


def create(codec: int, data: bytes) -> Cid:
    """
    Create a CID addressing `data`.

    Args:
        codec: CODEC_RAW or CODEC_DCBOR
        data: Content bytes to hash

    Returns:
        The CID of the SHA-256 digest of `data`
    """
    if codec not in SUPPORTED_CODECS:
        raise CidError(f"unsupported cid codec (0x{codec:x})")

    digest = hashlib.sha256(bytes(data)).digest()
    raw = bytes([CID_VERSION, codec, HASH_SHA256]) + encode_varint(len(digest)) + digest

    return Cid(
        version=CID_VERSION,
        codec=codec,
        digest=Digest(codec=HASH_SHA256, contents=digest),
        bytes=raw,
    )


def decode_first(buf: bytes) -> tuple[Cid, bytes]:
    """
    Decode a CID from the start of `buf`.

    Returns:
        Tuple of (cid, remaining bytes after the CID)

    Raises:
        CidError: On an unsupported version, codec or hash, or a short digest
    """
    buf = bytes(buf)
    length = len(buf)

    if length < 5:
        raise CidError("cid too short")

    version, codec, digest_codec = buf[0], buf[1], buf[2]

    if version != CID_VERSION:
        raise CidError(f"incorrect cid version (got v{version})")

    if codec not in SUPPORTED_CODECS:
        raise CidError(f"incorrect cid codec (got 0x{codec:x})")

    if digest_codec != HASH_SHA256:
        raise CidError(f"incorrect cid hash type (got 0x{digest_codec:x})")

    digest_size, leb_size = decode_varint(buf, 3)
    digest_offset = 3 + leb_size

    if length - digest_offset < digest_size:
        raise CidError(
            f"digest too short (expected {digest_size} bytes; got {length - digest_offset})"
        )

    end = digest_offset + digest_size
    cid = Cid(
        version=CID_VERSION,
        codec=codec,
        digest=Digest(codec=digest_codec, contents=buf[digest_offset:end]),
        bytes=buf[:end],
    )
    return cid, buf[end:]


def decode(buf: bytes) -> Cid:
    """Decode CID bytes, rejecting any trailing remainder."""
    cid, remainder = decode_first(buf)
    if remainder:
        raise CidError("cid bytes includes remainder")
    return cid


def from_string(text: str) -> Cid:
    """
    Parse the "b" + base32 text form of a CID.

    Raises:
        CidError: If the multibase prefix is wrong or the payload is invalid
    """
    if len(text) < 2 or text[0] != "b":
        raise CidError("not a multibase base32 string")

    try:
        raw = from_base32(text[1:])
    except ValueError as e:
        raise CidError(str(e)) from e

    return decode(raw)


def to_string(cid: Cid) -> str:
    """Format a CID as "b" + lowercase unpadded base32."""
    return "b" + to_base32(cid.bytes)


def from_binary(buf: bytes) -> Cid:
    """Decode the 0x00-prefixed binary form carried by CBOR tag 42."""
    if len(buf) < 2:
        raise CidError("cid bytes too short")
    if buf[0] != 0:
        raise CidError("incorrect binary cid")
    return decode(buf[1:])


def to_binary(cid: Cid) -> bytes:
    """Encode the 0x00-prefixed binary form carried by CBOR tag 42."""
    return b"\x00" + cid.bytes


# =============================================================================
# CID links (the value-model form of a CID)
# =============================================================================

class CidLink:
    """
    A CID as it appears in the CBOR value model.

    Wraps raw CID bytes without validating them; use `to_cid()` to parse.
    Serializes to JSON as {"$link": "b..."}.
    """

    __slots__ = ("bytes",)

    def __init__(self, raw: bytes):
        self.bytes = bytes(raw)

    @property
    def link(self) -> str:
        return "b" + to_base32(self.bytes)

    def to_cid(self) -> Cid:
        return decode(self.bytes)

    def to_json(self) -> dict[str, str]:
        return {"$link": self.link}

    @classmethod
    def from_string(cls, text: str) -> "CidLink":
        return cls(from_string(text).bytes)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CidLink):
            return NotImplemented
        return self.bytes == other.bytes

    def __hash__(self) -> int:
        return hash(self.bytes)

    def __repr__(self) -> str:
        return f"CidLink({self.link!r})"


def is_cid_link(value: Any) -> bool:
    """True for a CidLink or a JSON-style {"$link": "<string>"} mapping."""
    if isinstance(value, CidLink):
        return True
    return isinstance(value, dict) and isinstance(value.get("$link"), str)


def to_cid_link(cid: Cid) -> CidLink:
    return CidLink(cid.bytes)


def from_cid_link(link: CidLink | dict[str, str]) -> Cid:
    if isinstance(link, CidLink):
        return link.to_cid()
    return from_string(link["$link"])
