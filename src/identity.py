"""
did:key identities for did:plc rotation keys.

Provides did:key parsing, ECDSA signature verification over P-256 and
secp256k1, and keypairs that sign the way the PLC directory expects.

Signatures are 64-byte compact `r || s` values over SHA-256 of the message,
and must be low-S normalized unless malleable signatures are explicitly
allowed. did:keys are "did:key:z" + base58btc(multicodec prefix + compressed
public key).

Usage:
    # Generate a rotation key
    keypair = RotationKeypair.generate("secp256k1")
    did_key = keypair.did()

    # Sign the canonical bytes of an unsigned operation
    signature = keypair.sign(op_bytes)

    # Verify against a did:key
    is_valid = verify_signature(did_key, signature, op_bytes)
"""

import logging
import os
from dataclasses import dataclass
from typing import Any

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (
    decode_dss_signature,
    encode_dss_signature,
)
from cryptography.hazmat.primitives.serialization import (
    BestAvailableEncryption,
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
    load_pem_private_key,
)

from base_encodings import from_base58btc, to_base58btc

logger = logging.getLogger(__name__)

DID_KEY_PREFIX = "did:key:"

KEY_TYPE_P256 = "p256"
KEY_TYPE_SECP256K1 = "secp256k1"

# Multicodec prefixes for compressed public keys
P256_PUBLIC_PREFIX = bytes([0x80, 0x24])
SECP256K1_PUBLIC_PREFIX = bytes([0xE7, 0x01])

# Curve orders, for low-S normalization
P256_CURVE_ORDER = 0xFFFFFFFF00000000FFFFFFFFFFFFFFFFBCE6FAADA7179E84F3B9CAC2FC632551
SECP256K1_CURVE_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

SIGNATURE_LENGTH = 64

_KEY_TYPES = {
    KEY_TYPE_P256: {
        "prefix": P256_PUBLIC_PREFIX,
        "curve": ec.SECP256R1,
        "order": P256_CURVE_ORDER,
        "jwt_alg": "ES256",
    },
    KEY_TYPE_SECP256K1: {
        "prefix": SECP256K1_PUBLIC_PREFIX,
        "curve": ec.SECP256K1,
        "order": SECP256K1_CURVE_ORDER,
        "jwt_alg": "ES256K",
    },
}


@dataclass(frozen=True)
class FoundPublicKey:
    """A public key extracted from a did:key or multikey."""
    type: str
    jwt_alg: str
    public_key: bytes


def parse_public_multikey(multikey: str) -> FoundPublicKey:
    """
    Parse a base58btc multikey ("z...").

    Raises:
        ValueError: If the multibase, length or key type is not supported
    """
    if len(multikey) < 2 or multikey[0] != "z":
        raise ValueError("not a multibase base58btc string")

    raw = from_base58btc(multikey[1:])
    if len(raw) < 3:
        raise ValueError("multibase key too short")

    prefix, public_key = raw[:2], raw[2:]
    for key_type, params in _KEY_TYPES.items():
        if prefix == params["prefix"]:
            return FoundPublicKey(type=key_type, jwt_alg=params["jwt_alg"], public_key=public_key)

    raise ValueError(f"unsupported key type (0x{prefix.hex()})")


def parse_did_key(did_key: str) -> FoundPublicKey:
    """
    Parse a "did:key:z..." string.

    Raises:
        ValueError: If the string is not a supported did:key
    """
    if not did_key.startswith(DID_KEY_PREFIX):
        raise ValueError("not a did:key")

    return parse_public_multikey(did_key[len(DID_KEY_PREFIX):])


def format_did_key(key_type: str, public_key: bytes) -> str:
    """Format a compressed public key as a did:key string."""
    prefix = _KEY_TYPES[key_type]["prefix"]
    return DID_KEY_PREFIX + "z" + to_base58btc(prefix + public_key)


def _is_low_s(s: int, order: int) -> bool:
    # Upper bound is inclusive
    return s <= order >> 1


def verify_signature(
    did_key: str,
    signature: bytes,
    data: bytes,
    allow_malleable: bool = False,
) -> bool:
    """
    Verify a compact ECDSA signature against a did:key.

    Args:
        did_key: The signer's did:key string
        signature: 64-byte `r || s` signature
        data: The signed message (hashed with SHA-256 here)
        allow_malleable: Accept high-S signatures

    Returns:
        True if the signature is valid, False otherwise (including for
        unparsable keys)
    """
    if len(signature) != SIGNATURE_LENGTH:
        return False

    try:
        found = parse_did_key(did_key)
        params = _KEY_TYPES[found.type]
        public_key = ec.EllipticCurvePublicKey.from_encoded_point(
            params["curve"](), found.public_key
        )
    except (ValueError, UnsupportedAlgorithm) as e:
        logger.warning("Unusable did:key %s: %s", did_key, e)
        return False

    r = int.from_bytes(signature[:32], "big")
    s = int.from_bytes(signature[32:], "big")

    if not allow_malleable and not _is_low_s(s, params["order"]):
        logger.debug("Rejected high-S signature for %s", did_key)
        return False

    try:
        public_key.verify(encode_dss_signature(r, s), bytes(data), ec.ECDSA(hashes.SHA256()))
        return True
    except InvalidSignature:
        return False


class RotationKeypair:
    """
    A private rotation key able to sign did:plc operations.

    Produces the same signature encoding that verify_signature() accepts:
    compact, low-S normalized ECDSA over SHA-256.
    """

    def __init__(self, key_type: str, private_key: Any):
        """
        Initialize a keypair.

        Args:
            key_type: KEY_TYPE_P256 or KEY_TYPE_SECP256K1
            private_key: cryptography EllipticCurvePrivateKey on the matching curve
        """
        if key_type not in _KEY_TYPES:
            raise ValueError(f"unsupported key type {key_type!r}")

        self.key_type = key_type
        self._private_key = private_key

    @classmethod
    def generate(cls, key_type: str = KEY_TYPE_SECP256K1) -> "RotationKeypair":
        """Generate a fresh keypair."""
        if key_type not in _KEY_TYPES:
            raise ValueError(f"unsupported key type {key_type!r}")

        private_key = ec.generate_private_key(_KEY_TYPES[key_type]["curve"]())
        return cls(key_type, private_key)

    @property
    def public_key_bytes(self) -> bytes:
        """Compressed SEC1 public key (33 bytes)."""
        return self._private_key.public_key().public_bytes(
            Encoding.X962, PublicFormat.CompressedPoint
        )

    def did(self) -> str:
        """The did:key string of this keypair."""
        return format_did_key(self.key_type, self.public_key_bytes)

    def sign(self, data: bytes) -> bytes:
        """
        Sign a message.

        Returns:
            64-byte compact, low-S signature
        """
        der = self._private_key.sign(bytes(data), ec.ECDSA(hashes.SHA256()))
        r, s = decode_dss_signature(der)

        order = _KEY_TYPES[self.key_type]["order"]
        if not _is_low_s(s, order):
            s = order - s

        return r.to_bytes(32, "big") + s.to_bytes(32, "big")

    def save(self, path: str, passphrase: str | None = None) -> None:
        """
        Save the private key to a PEM keystore.

        Args:
            path: File path for the keystore
            passphrase: Optional passphrase for encryption (recommended)
        """
        if passphrase:
            encryption = BestAvailableEncryption(passphrase.encode("utf-8"))
        else:
            encryption = NoEncryption()

        private_bytes = self._private_key.private_bytes(
            Encoding.PEM, PrivateFormat.PKCS8, encryption
        )

        # Write with restrictive permissions (owner read/write only)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        try:
            os.write(fd, private_bytes)
        finally:
            os.close(fd)

        logger.info("Saved %s rotation key %s to %s", self.key_type, self.did(), path)

    @classmethod
    def load(cls, path: str, passphrase: str | None = None) -> "RotationKeypair":
        """
        Load a keypair from a PEM keystore.

        Raises:
            ValueError: If the key is not on a supported curve
        """
        with open(path, "rb") as f:
            private_bytes = f.read()

        pw = passphrase.encode("utf-8") if passphrase else None
        private_key = load_pem_private_key(private_bytes, password=pw)

        if not isinstance(private_key, ec.EllipticCurvePrivateKey):
            raise ValueError("keystore does not hold an elliptic-curve key")

        for key_type, params in _KEY_TYPES.items():
            if isinstance(private_key.curve, params["curve"]):
                keypair = cls(key_type, private_key)
                logger.info("Loaded %s rotation key %s from %s", key_type, keypair.did(), path)
                return keypair

        raise ValueError(f"unsupported curve {private_key.curve.name}")
