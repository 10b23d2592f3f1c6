"""
Pytest configuration and shared fixtures for did:plc validator tests.

This module provides shared fixtures including:
- Rotation keypairs generated on the fly
- A builder for signed operation logs
- Real audit logs captured from plc.directory
- A private metrics collector per test
"""

import os
import sys
from dataclasses import replace
from datetime import UTC, datetime, timedelta

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from base_encodings import to_base64url
from identity import KEY_TYPE_P256, KEY_TYPE_SECP256K1, RotationKeypair
from monitoring.metrics import MetricsCollector
from plc_operations import IndexedOperation, Operation, Service, Tombstone
from plc_validator import compute_operation_cid, derive_did, encode_unsigned_operation

FIXTURES_DIR = os.path.join(os.path.dirname(__file__), 'fixtures')


def sign(op, signer: RotationKeypair):
    """Return a copy of `op` signed by `signer`."""
    sig = signer.sign(encode_unsigned_operation(op))
    return replace(op, sig=to_base64url(sig))


class PlcLogBuilder:
    """Builds signed, correctly hashed audit-log entries for one DID."""

    def __init__(self):
        self.did = None
        self.created_at = datetime(2024, 1, 1, tzinfo=UTC)

    def operation(self, signer, rotation_keys, prev=None, handle="alice.example.com"):
        unsigned = Operation(
            prev=prev.cid if prev is not None else None,
            rotation_keys=[key.did() for key in rotation_keys],
            verification_methods={"atproto": rotation_keys[-1].did()},
            also_known_as=[f"at://{handle}"],
            services={
                "atproto_pds": Service(
                    type="AtprotoPersonalDataServer",
                    endpoint="https://pds.example.com",
                )
            },
            sig="",
        )
        return sign(unsigned, signer)

    def entry(self, op, after=timedelta(minutes=1), nullified=False):
        self.created_at += after
        return IndexedOperation(
            did=self.did,
            operation=op,
            cid=str(compute_operation_cid(op)),
            nullified=nullified,
            created_at=self.created_at,
        )

    def genesis(self, signer, rotation_keys, **kwargs):
        op = self.operation(signer, rotation_keys, **kwargs)
        self.did = derive_did(op)
        return self.entry(op)

    def update(self, signer, rotation_keys, prev, after=timedelta(minutes=1), **kwargs):
        return self.entry(self.operation(signer, rotation_keys, prev=prev, **kwargs), after=after)

    def tombstone(self, signer, prev, after=timedelta(minutes=1)):
        return self.entry(sign(Tombstone(prev=prev.cid, sig=""), signer), after=after)


@pytest.fixture(scope="session")
def rotation_keys():
    """Three rotation keys, most powerful first (P-256, then two secp256k1)."""
    return [
        RotationKeypair.generate(KEY_TYPE_P256),
        RotationKeypair.generate(KEY_TYPE_SECP256K1),
        RotationKeypair.generate(KEY_TYPE_SECP256K1),
    ]


@pytest.fixture
def log_builder():
    """Fresh log builder."""
    return PlcLogBuilder()


@pytest.fixture
def collector():
    """Metrics collector isolated from the global one."""
    return MetricsCollector()


def _read_fixture(name):
    with open(os.path.join(FIXTURES_DIR, name), 'rb') as f:
        return f.read()


@pytest.fixture(scope="session")
def legacy_audit_log():
    """Audit log of did:plc:oky5czdrnfjpqslsw2a5iclo (legacy create genesis)."""
    return _read_fixture('audit_log_legacy.json')


@pytest.fixture(scope="session")
def recovery_audit_log():
    """Audit log of did:plc:pkmfz5soq2swsvbhvjekb36g (one recovery fork)."""
    return _read_fixture('audit_log_recovery.json')
