"""
Tests for the did:plc operation-log validator.

These tests verify that:
1. Real audit logs from plc.directory validate, including a recovery fork
2. Genesis operations must derive the DID and be self-signed
3. Declared CIDs are checked against the operation contents
4. Forks are honored only within the recovery window and from a more
   powerful rotation key
5. Tombstones end the chain unless recovered
"""

import os
import sys
from dataclasses import replace
from datetime import timedelta

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from audit_log import parse_audit_log
from config import ValidatorConfig
from content_id import CODEC_DCBOR, create
from identity import RotationKeypair
from plc_errors import ErrorKind, PlcError
from plc_operations import IndexedOperation, LegacyCreateOperation, Tombstone
from plc_validator import (
    OperationLogValidator,
    compute_operation_cid,
    derive_did,
    encode_unsigned_operation,
    validate_indexed_operation,
    validate_operation_log,
)


def kinds_of(exc_info):
    return exc_info.value.kind


class TestRealAuditLogs:
    """Logs captured from plc.directory."""

    def test_legacy_genesis_log(self, legacy_audit_log):
        """A log starting with a legacy create operation should validate."""
        log = parse_audit_log(legacy_audit_log)

        result = validate_operation_log("did:plc:oky5czdrnfjpqslsw2a5iclo", log)

        assert [op.cid for op in result.canonical] == [op.cid for op in log]
        assert result.nullified == []
        assert not result.is_tombstoned

    def test_recovery_log(self, recovery_audit_log):
        """A fork by a more powerful key should nullify the disputed branch."""
        log = parse_audit_log(recovery_audit_log)

        result = validate_operation_log("did:plc:pkmfz5soq2swsvbhvjekb36g", log)

        assert [op.cid for op in result.canonical] == [
            "bafyreid2tbopmtuguvuvij5kjcqo7rv7yvqza37uvfcvk5zdxyo57xlfdi",
            "bafyreiafe2tt3xhvufat3peri6qjqkjrv55fuxbnwtrjbfce5zdnbsdisy",
        ]
        assert [op.cid for op in result.nullified] == [
            "bafyreiahul3cohr3je7wyfezlkzzlv66g37nq5nojcrmv6kxn6xgesh6bi",
            "bafyreifgeojzcravnjlw3qw3nizra57iaoszgzqvit4gtjoijrab5aif3i",
            "bafyreicp5wh4hc3m5qbgfxg5haau45dxdgxtz7mhi65gl5cundmuggi3fy",
            "bafyreihsp7jfyteidzz2im4nxncmdyxdiqucakx45or2i63vhhslxddhrm",
        ]

    def test_recovery_log_passes_strict_flag_check(self, recovery_audit_log):
        """The directory flags every operation the fork nullifies."""
        log = parse_audit_log(recovery_audit_log)
        config = ValidatorConfig(strict_nullified_flags=True)

        result = validate_operation_log("did:plc:pkmfz5soq2swsvbhvjekb36g", log, config=config)

        assert len(result.nullified) == 4

    def test_genesis_derives_did(self, legacy_audit_log):
        """The DID is the truncated base32 SHA-256 of the signed genesis."""
        genesis = parse_audit_log(legacy_audit_log)[0]

        assert derive_did(genesis.operation) == "did:plc:oky5czdrnfjpqslsw2a5iclo"
        assert str(compute_operation_cid(genesis.operation)) == genesis.cid

    def test_wrong_did_rejected(self, legacy_audit_log):
        """Validating under another DID should fail on ownership."""
        log = parse_audit_log(legacy_audit_log)

        with pytest.raises(PlcError) as exc_info:
            validate_operation_log("did:plc:pkmfz5soq2swsvbhvjekb36g", log)

        assert kinds_of(exc_info) == ErrorKind.IMPROPER_OPERATION

    def test_tampered_signature_rejected(self, legacy_audit_log):
        """Changing the signature changes the CID, so the hash check fails first."""
        log = parse_audit_log(legacy_audit_log)
        second = log[1]
        forged = replace(second, operation=replace(second.operation, sig=log[2].operation.sig))

        with pytest.raises(PlcError) as exc_info:
            validate_operation_log("did:plc:oky5czdrnfjpqslsw2a5iclo", [log[0], forged])

        assert kinds_of(exc_info) == ErrorKind.INVALID_HASH


class TestGenesis:
    """Tests for the first operation of a log."""

    def test_valid_genesis(self, log_builder, rotation_keys):
        """A self-signed genesis should be accepted."""
        genesis = log_builder.genesis(rotation_keys[1], rotation_keys)

        result = validate_operation_log(log_builder.did, [genesis])

        assert result.canonical == [genesis]
        assert result.tip is genesis

    def test_genesis_signed_by_outsider(self, log_builder, rotation_keys):
        """A genesis not signed by its own rotation keys should be rejected."""
        outsider = RotationKeypair.generate()
        genesis = log_builder.genesis(outsider, rotation_keys)

        with pytest.raises(PlcError) as exc_info:
            validate_operation_log(log_builder.did, [genesis])

        assert kinds_of(exc_info) == ErrorKind.INVALID_SIGNATURE
        assert exc_info.value.cid == genesis.cid

    def test_genesis_with_prev(self, log_builder, rotation_keys):
        """A genesis must have a null prev."""
        first = log_builder.genesis(rotation_keys[0], rotation_keys)
        op = log_builder.operation(rotation_keys[0], rotation_keys, prev=first)
        log_builder.did = derive_did(op)
        genesis = log_builder.entry(op)

        with pytest.raises(PlcError) as exc_info:
            validate_operation_log(log_builder.did, [genesis])

        assert kinds_of(exc_info) == ErrorKind.IMPROPER_OPERATION
        assert "null prev" in exc_info.value.reason

    def test_genesis_tombstone(self, log_builder, rotation_keys):
        """A log can't start with a tombstone."""
        first = log_builder.genesis(rotation_keys[0], rotation_keys)
        tombstone = log_builder.tombstone(rotation_keys[0], first)

        with pytest.raises(PlcError) as exc_info:
            validate_operation_log(log_builder.did, [tombstone])

        assert kinds_of(exc_info) == ErrorKind.IMPROPER_OPERATION

    def test_genesis_for_other_did(self, log_builder, rotation_keys):
        """A genesis whose hash doesn't derive the DID should be rejected."""
        genesis = log_builder.genesis(rotation_keys[0], rotation_keys)
        other_did = "did:plc:" + "a" * 24
        misattributed = replace(genesis, did=other_did)

        with pytest.raises(PlcError) as exc_info:
            validate_operation_log(other_did, [misattributed])

        assert kinds_of(exc_info) == ErrorKind.GENESIS_HASH

    def test_genesis_with_wrong_cid(self, log_builder, rotation_keys):
        """The declared CID must match the genesis contents."""
        genesis = log_builder.genesis(rotation_keys[0], rotation_keys)
        other = log_builder.update(rotation_keys[0], rotation_keys, prev=genesis)
        mislabeled = replace(genesis, cid=other.cid)

        with pytest.raises(PlcError) as exc_info:
            validate_operation_log(log_builder.did, [mislabeled])

        assert kinds_of(exc_info) == ErrorKind.INVALID_HASH
        assert exc_info.value.cid == other.cid

    def test_empty_log(self):
        """An empty log has no genesis."""
        with pytest.raises(ValueError):
            validate_operation_log("did:plc:" + "a" * 24, [])


class TestContinuation:
    """Tests for linear extension of the chain."""

    def test_linear_chain(self, log_builder, rotation_keys):
        """Each operation signed by a rotation key of its predecessor is accepted."""
        genesis = log_builder.genesis(rotation_keys[0], rotation_keys)
        second = log_builder.update(rotation_keys[2], rotation_keys[1:], prev=genesis)
        third = log_builder.update(rotation_keys[1], rotation_keys[1:], prev=second)

        result = validate_operation_log(log_builder.did, [genesis, second, third])

        assert result.canonical == [genesis, second, third]
        assert result.nullified == []

    def test_rotated_out_key_cannot_sign(self, log_builder, rotation_keys):
        """Keys removed by an operation lose their authority."""
        genesis = log_builder.genesis(rotation_keys[0], rotation_keys)
        second = log_builder.update(rotation_keys[0], rotation_keys[1:], prev=genesis)
        third = log_builder.update(rotation_keys[0], rotation_keys, prev=second)

        with pytest.raises(PlcError) as exc_info:
            validate_operation_log(log_builder.did, [genesis, second, third])

        assert kinds_of(exc_info) == ErrorKind.INVALID_SIGNATURE
        assert exc_info.value.cid == third.cid

    def test_prev_not_in_history(self, log_builder, rotation_keys):
        """prev must name an operation already in the canonical history."""
        genesis = log_builder.genesis(rotation_keys[0], rotation_keys)
        detached = log_builder.update(rotation_keys[0], rotation_keys, prev=genesis)
        orphan = log_builder.update(rotation_keys[0], rotation_keys, prev=detached)

        with pytest.raises(PlcError) as exc_info:
            validate_operation_log(log_builder.did, [genesis, orphan])

        assert kinds_of(exc_info) == ErrorKind.IMPROPER_OPERATION
        assert "not in history" in exc_info.value.reason

    def test_missing_prev_after_genesis(self, log_builder, rotation_keys):
        """Only the genesis may have a null prev."""
        genesis = log_builder.genesis(rotation_keys[0], rotation_keys)
        second = log_builder.entry(
            log_builder.operation(rotation_keys[0], rotation_keys, handle="bob.example.com")
        )

        with pytest.raises(PlcError) as exc_info:
            validate_operation_log(log_builder.did, [genesis, second])

        assert kinds_of(exc_info) == ErrorKind.IMPROPER_OPERATION
        assert "expected prev" in exc_info.value.reason

    def test_cid_of_unsigned_form_rejected(self, log_builder, rotation_keys):
        """The CID covers the signed operation, sig included."""
        genesis = log_builder.genesis(rotation_keys[0], rotation_keys)
        second = log_builder.update(rotation_keys[0], rotation_keys, prev=genesis)
        unsigned_cid = str(create(CODEC_DCBOR, encode_unsigned_operation(second.operation)))
        mislabeled = replace(second, cid=unsigned_cid)

        assert unsigned_cid != second.cid

        with pytest.raises(PlcError) as exc_info:
            validate_operation_log(log_builder.did, [genesis, mislabeled])

        assert kinds_of(exc_info) == ErrorKind.INVALID_HASH
        assert exc_info.value.cid == unsigned_cid

    def test_tampered_operation(self, log_builder, rotation_keys):
        """Editing an operation after the fact is caught by the hash check."""
        genesis = log_builder.genesis(rotation_keys[0], rotation_keys)
        second = log_builder.update(rotation_keys[0], rotation_keys, prev=genesis)
        edited = replace(
            second,
            operation=replace(second.operation, also_known_as=["at://mallory.example.com"]),
        )

        with pytest.raises(PlcError) as exc_info:
            validate_operation_log(log_builder.did, [genesis, edited])

        assert kinds_of(exc_info) == ErrorKind.INVALID_HASH

    def test_entry_from_other_did(self, log_builder, rotation_keys):
        """Every entry must belong to the DID being validated."""
        genesis = log_builder.genesis(rotation_keys[0], rotation_keys)
        second = log_builder.update(rotation_keys[0], rotation_keys, prev=genesis)
        foreign = replace(second, did="did:plc:" + "b" * 24)

        with pytest.raises(PlcError) as exc_info:
            validate_operation_log(log_builder.did, [genesis, foreign])

        assert kinds_of(exc_info) == ErrorKind.IMPROPER_OPERATION

    def test_legacy_create_after_genesis(self, log_builder, rotation_keys):
        """Legacy create operations are only valid as genesis."""
        genesis = log_builder.genesis(rotation_keys[0], rotation_keys)
        legacy = LegacyCreateOperation(
            signing_key=rotation_keys[1].did(),
            recovery_key=rotation_keys[0].did(),
            handle="alice.example.com",
            service="pds.example.com",
            sig="",
        )

        with pytest.raises(PlcError) as exc_info:
            validate_operation_log(log_builder.did, [genesis, log_builder.entry(legacy)])

        assert kinds_of(exc_info) == ErrorKind.IMPROPER_OPERATION

    def test_single_step(self, log_builder, rotation_keys):
        """The single-step function returns the extended history."""
        genesis = log_builder.genesis(rotation_keys[0], rotation_keys)
        second = log_builder.update(rotation_keys[0], rotation_keys, prev=genesis)

        step = validate_indexed_operation(log_builder.did, [genesis], second)

        assert step.prev == genesis.cid
        assert step.ops == [genesis, second]
        assert step.nullified == []

    def test_history_is_not_modified(self, log_builder, rotation_keys):
        """A step never mutates the history it is given."""
        genesis = log_builder.genesis(rotation_keys[0], rotation_keys)
        second = log_builder.update(rotation_keys[2], rotation_keys, prev=genesis)
        fork = log_builder.update(rotation_keys[0], rotation_keys, prev=genesis)
        history = [genesis, second]

        step = validate_indexed_operation(log_builder.did, history, fork)

        assert history == [genesis, second]
        assert step.ops == [genesis, fork]
        assert step.nullified == [second]


class TestRecovery:
    """Tests for forks that nullify part of the history."""

    def test_recovery_by_more_powerful_key(self, log_builder, rotation_keys):
        """A higher-ranked key may fork around an operation within the window."""
        genesis = log_builder.genesis(rotation_keys[0], rotation_keys)
        hijack = log_builder.update(rotation_keys[2], rotation_keys[2:], prev=genesis)
        follow_up = log_builder.update(rotation_keys[2], rotation_keys[2:], prev=hijack)
        recovery = log_builder.update(
            rotation_keys[1], rotation_keys, prev=genesis, after=timedelta(hours=71)
        )

        result = validate_operation_log(log_builder.did, [genesis, hijack, follow_up, recovery])

        assert result.canonical == [genesis, recovery]
        assert result.nullified == [hijack, follow_up]

    def test_recovery_by_same_key(self, log_builder, rotation_keys):
        """The signer of the disputed operation can't fork around itself."""
        genesis = log_builder.genesis(rotation_keys[0], rotation_keys)
        disputed = log_builder.update(rotation_keys[1], rotation_keys, prev=genesis)
        fork = log_builder.update(rotation_keys[1], rotation_keys, prev=genesis)

        with pytest.raises(PlcError) as exc_info:
            validate_operation_log(log_builder.did, [genesis, disputed, fork])

        assert kinds_of(exc_info) == ErrorKind.INVALID_SIGNATURE
        assert exc_info.value.cid == fork.cid

    def test_operation_by_top_key_cannot_be_disputed(self, log_builder, rotation_keys):
        """Nothing outranks the first rotation key."""
        genesis = log_builder.genesis(rotation_keys[0], rotation_keys)
        disputed = log_builder.update(rotation_keys[0], rotation_keys, prev=genesis)
        fork = log_builder.update(rotation_keys[0], rotation_keys, prev=genesis)

        with pytest.raises(PlcError) as exc_info:
            validate_operation_log(log_builder.did, [genesis, disputed, fork])

        assert kinds_of(exc_info) == ErrorKind.INVALID_SIGNATURE

    def test_late_recovery(self, log_builder, rotation_keys):
        """Forks after the recovery window are rejected."""
        genesis = log_builder.genesis(rotation_keys[0], rotation_keys)
        hijack = log_builder.update(rotation_keys[2], rotation_keys[2:], prev=genesis)
        recovery = log_builder.update(
            rotation_keys[0], rotation_keys, prev=genesis, after=timedelta(hours=73)
        )

        with pytest.raises(PlcError) as exc_info:
            validate_operation_log(log_builder.did, [genesis, hijack, recovery])

        assert kinds_of(exc_info) == ErrorKind.LATE_RECOVERY
        assert exc_info.value.cid == recovery.cid

    def test_recovery_at_window_boundary(self, log_builder, rotation_keys):
        """A fork exactly at the end of the window is still in time."""
        genesis = log_builder.genesis(rotation_keys[0], rotation_keys)
        hijack = log_builder.update(rotation_keys[2], rotation_keys[2:], prev=genesis)
        recovery = log_builder.update(
            rotation_keys[0], rotation_keys, prev=genesis, after=timedelta(hours=72)
        )

        result = validate_operation_log(log_builder.did, [genesis, hijack, recovery])

        assert result.canonical == [genesis, recovery]

    def test_configured_recovery_window(self, log_builder, rotation_keys):
        """The window can be shortened by configuration."""
        genesis = log_builder.genesis(rotation_keys[0], rotation_keys)
        hijack = log_builder.update(rotation_keys[2], rotation_keys[2:], prev=genesis)
        recovery = log_builder.update(
            rotation_keys[0], rotation_keys, prev=genesis, after=timedelta(hours=2)
        )
        config = ValidatorConfig(recovery_window_hours=1)

        with pytest.raises(PlcError) as exc_info:
            validate_operation_log(log_builder.did, [genesis, hijack, recovery], config=config)

        assert kinds_of(exc_info) == ErrorKind.LATE_RECOVERY

    def test_strict_flags_require_nullified(self, log_builder, rotation_keys):
        """With strict flags, the source must agree on what was nullified."""
        genesis = log_builder.genesis(rotation_keys[0], rotation_keys)
        hijack = log_builder.update(rotation_keys[2], rotation_keys, prev=genesis)
        recovery = log_builder.update(rotation_keys[0], rotation_keys, prev=genesis)
        log = [genesis, hijack, recovery]
        strict = ValidatorConfig(strict_nullified_flags=True)

        with pytest.raises(PlcError) as exc_info:
            validate_operation_log(log_builder.did, log, config=strict)
        assert kinds_of(exc_info) == ErrorKind.IMPROPER_OPERATION
        assert exc_info.value.cid == hijack.cid

        flagged = [genesis, replace(hijack, nullified=True), recovery]
        result = validate_operation_log(log_builder.did, flagged, config=strict)
        assert [op.cid for op in result.nullified] == [hijack.cid]

    def test_source_flags_are_not_trusted(self, log_builder, rotation_keys):
        """A nullified flag on an operation nobody forked around changes nothing."""
        genesis = log_builder.genesis(rotation_keys[0], rotation_keys)
        second = replace(
            log_builder.update(rotation_keys[0], rotation_keys, prev=genesis), nullified=True
        )

        result = validate_operation_log(log_builder.did, [genesis, second])

        assert result.canonical == [genesis, second]
        assert result.nullified == []

    def test_recovery_undoes_tombstone(self, log_builder, rotation_keys):
        """A tombstone is a disputable operation like any other."""
        genesis = log_builder.genesis(rotation_keys[0], rotation_keys)
        tombstone = log_builder.tombstone(rotation_keys[2], genesis)
        recovery = log_builder.update(rotation_keys[0], rotation_keys, prev=genesis)

        result = validate_operation_log(log_builder.did, [genesis, tombstone, recovery])

        assert result.canonical == [genesis, recovery]
        assert result.nullified == [tombstone]
        assert not result.is_tombstoned


class TestTombstone:
    """Tests for tombstoned DIDs."""

    def test_tombstone_accepted(self, log_builder, rotation_keys):
        """A tombstone signed by a rotation key ends the chain."""
        genesis = log_builder.genesis(rotation_keys[0], rotation_keys)
        tombstone = log_builder.tombstone(rotation_keys[1], genesis)

        result = validate_operation_log(log_builder.did, [genesis, tombstone])

        assert result.is_tombstoned
        assert isinstance(result.tip.operation, Tombstone)

    def test_extending_tombstone(self, log_builder, rotation_keys):
        """Nothing may follow a tombstone."""
        genesis = log_builder.genesis(rotation_keys[0], rotation_keys)
        tombstone = log_builder.tombstone(rotation_keys[0], genesis)
        after = log_builder.update(rotation_keys[0], rotation_keys, prev=tombstone)

        with pytest.raises(PlcError) as exc_info:
            validate_operation_log(log_builder.did, [genesis, tombstone, after])

        assert kinds_of(exc_info) == ErrorKind.IMPROPER_OPERATION
        assert "tombstoned" in exc_info.value.reason


class TestValidatorWiring:
    """Tests for the validator's collaborators."""

    def test_custom_verifier(self, log_builder, rotation_keys):
        """An injected verifier decides signature validity."""
        genesis = log_builder.genesis(rotation_keys[0], rotation_keys)
        calls = []

        def reject_all(did_key, sig, data):
            calls.append(did_key)
            return False

        validator = OperationLogValidator(verifier=reject_all)

        with pytest.raises(PlcError) as exc_info:
            validator.validate_log(log_builder.did, [genesis])

        assert kinds_of(exc_info) == ErrorKind.INVALID_SIGNATURE
        assert calls == [key.did() for key in rotation_keys]

    def test_signer_lookup_prefers_first_key(self, log_builder, rotation_keys):
        """is_signed_operation_valid returns the first key that verifies."""
        genesis = log_builder.genesis(rotation_keys[2], rotation_keys)
        validator = OperationLogValidator(verifier=lambda key, sig, data: True)

        keys = [key.did() for key in rotation_keys]
        assert validator.is_signed_operation_valid(keys, genesis.operation) == keys[0]
        assert OperationLogValidator().is_signed_operation_valid(keys, genesis.operation) == keys[2]
        assert OperationLogValidator().is_signed_operation_valid([], genesis.operation) is None

    def test_undecodable_signature(self, log_builder, rotation_keys):
        """A malformed sig field simply fails verification."""
        genesis = log_builder.genesis(rotation_keys[0], rotation_keys)
        op = replace(genesis.operation, sig="not base64url!")

        keys = [key.did() for key in rotation_keys]
        assert OperationLogValidator().is_signed_operation_valid(keys, op) is None

    def test_metrics_recorded(self, log_builder, rotation_keys, collector):
        """Accepted operations, recoveries and rejections are counted."""
        genesis = log_builder.genesis(rotation_keys[0], rotation_keys)
        hijack = log_builder.update(rotation_keys[2], rotation_keys, prev=genesis)
        recovery = log_builder.update(rotation_keys[0], rotation_keys, prev=genesis)
        validator = OperationLogValidator(metrics=collector)

        validator.validate_log(log_builder.did, [genesis, hijack, recovery])

        assert collector.get_counter("operations_validated_total") == 3
        assert collector.get_counter("recoveries_total") == 1
        assert collector.get_counter("logs_validated_total") == 1
        assert collector.get_histogram("log_validation_ms").count == 1

        with pytest.raises(PlcError):
            validator.validate_log(log_builder.did, [replace(genesis, cid=hijack.cid)])

        assert collector.get_counter("logs_rejected_total", labels={"kind": "invalid_hash"}) == 1

    def test_results_are_independent(self, log_builder, rotation_keys):
        """One validator may be reused for several logs."""
        genesis = log_builder.genesis(rotation_keys[0], rotation_keys)
        validator = OperationLogValidator()

        first = validator.validate_log(log_builder.did, [genesis])
        second = validator.validate_log(log_builder.did, [genesis])

        assert first == second
        assert first.canonical is not second.canonical

    def test_error_serialization(self, log_builder, rotation_keys):
        """PlcError carries structured context for logging."""
        genesis = log_builder.genesis(rotation_keys[0], rotation_keys)
        tombstone = log_builder.tombstone(rotation_keys[0], genesis)
        after = log_builder.update(rotation_keys[0], rotation_keys, prev=tombstone)

        with pytest.raises(PlcError) as exc_info:
            validate_operation_log(log_builder.did, [genesis, tombstone, after])

        data = exc_info.value.to_dict()
        assert data["kind"] == "improper_operation"
        assert data["cid"] == after.cid
        assert data["details"]["cid"] == after.cid
        assert after.cid in str(exc_info.value)


def test_indexed_operation_is_frozen(log_builder, rotation_keys):
    """Audit-log entries are immutable."""
    genesis = log_builder.genesis(rotation_keys[0], rotation_keys)

    with pytest.raises(AttributeError):
        genesis.nullified = True

    assert isinstance(genesis, IndexedOperation)
