"""
Multibase text encodings used by CIDs, DIDs and signatures.

- base32: RFC 4648 alphabet, lowercase, no padding (CID strings, did:plc ids)
- base58btc: Bitcoin alphabet (did:key multikeys)
- base64url: URL-safe alphabet, no padding (operation signatures)

base32 and base58btc go through the multibase codecs of `multiformats`;
the helpers here deal in the bare encodings, without the multibase prefix
character. Decoders are strict: characters outside the alphabet, impossible
lengths and non-zero trailing bits raise ValueError instead of being skipped.
"""

import base64
import binascii
import re

from multiformats import multibase

BASE32_ALPHABET = "abcdefghijklmnopqrstuvwxyz234567"
BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"

_BASE32_RE = re.compile(r"^[a-z2-7]*$")
_BASE58_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]*$")
_BASE64URL_RE = re.compile(r"^[A-Za-z0-9_-]*$")

# Unused low bits in the last character, by length mod 8
_BASE32_TRAILING_BITS = {0: 0, 2: 2, 4: 4, 5: 1, 7: 3}


def to_base32(data: bytes) -> str:
    """Encode bytes as lowercase, unpadded base32."""
    if not data:
        return ""
    return multibase.encode(bytes(data), "base32")[1:]


def from_base32(text: str) -> bytes:
    """
    Decode lowercase, unpadded base32.

    Raises:
        ValueError: On characters outside the alphabet, an impossible length
            or non-zero trailing bits
    """
    if not _BASE32_RE.match(text):
        raise ValueError("invalid base32 character")

    trailing = _BASE32_TRAILING_BITS.get(len(text) % 8)
    if trailing is None:
        raise ValueError(f"invalid base32 length ({len(text)})")
    if not text:
        return b""
    if BASE32_ALPHABET.index(text[-1]) & ((1 << trailing) - 1):
        raise ValueError("non-zero trailing bits in base32 input")

    return bytes(multibase.decode("b" + text))


def to_base58btc(data: bytes) -> str:
    """Encode bytes with the base58btc alphabet."""
    if not data:
        return ""
    return multibase.encode(bytes(data), "base58btc")[1:]


def from_base58btc(text: str) -> bytes:
    """
    Decode base58btc text.

    Raises:
        ValueError: On characters outside the alphabet
    """
    if not _BASE58_RE.match(text):
        raise ValueError("invalid base58 character")
    if not text:
        return b""
    return bytes(multibase.decode("z" + text))


def to_base64url(data: bytes) -> str:
    """Encode bytes as unpadded base64url."""
    return base64.urlsafe_b64encode(bytes(data)).decode("ascii").rstrip("=")


def from_base64url(text: str) -> bytes:
    """
    Decode unpadded base64url.

    Raises:
        ValueError: On characters outside the alphabet or an impossible length
    """
    if not _BASE64URL_RE.match(text):
        raise ValueError("invalid base64url character")

    if len(text) % 4 == 1:
        raise ValueError(f"invalid base64url length ({len(text)})")

    padded = text + "=" * (-len(text) % 4)
    try:
        return base64.urlsafe_b64decode(padded)
    except binascii.Error as e:
        raise ValueError(f"invalid base64url input: {e}") from e


def to_base64(data: bytes) -> str:
    """Encode bytes as unpadded standard base64 (the `$bytes` JSON form)."""
    return base64.b64encode(bytes(data)).decode("ascii").rstrip("=")


def from_base64(text: str) -> bytes:
    """Decode standard base64, padded or not."""
    padded = text + "=" * (-len(text) % 4)
    try:
        return base64.b64decode(padded, validate=True)
    except binascii.Error as e:
        raise ValueError(f"invalid base64 input: {e}") from e
