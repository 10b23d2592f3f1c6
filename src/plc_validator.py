"""
did:plc operation-log validator.

Replays an audit log one operation at a time against the canonical history
built so far:

1. The declared CID must equal the DAG-CBOR CID recomputed over the signed
   operation.
2. The first operation must be a non-tombstone with prev = null, its hash must
   derive the DID, and one of its own rotation keys must have signed it.
3. Every later operation must name an operation in the canonical history as
   `prev`, and be signed by a rotation key of that operation. Extending a
   tombstone is not allowed.
4. Naming an earlier operation than the tip forks the history (a recovery).
   It must arrive within the recovery window of the first operation it
   nullifies, and be signed by a strictly more powerful rotation key (lower
   index) than the one that signed that operation.

Any failure rejects the whole log. Callers never see a partial result.

Usage:
    from audit_log import parse_audit_log
    from plc_validator import validate_operation_log

    result = validate_operation_log(did, parse_audit_log(payload))
    result.canonical   # surviving chain, in order
    result.nullified   # operations superseded by recoveries
"""

import hashlib
import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from functools import lru_cache, partial

import canonical_cbor
from base_encodings import from_base64url, to_base32
from config import ValidatorConfig
from content_id import CODEC_DCBOR, Cid, CidError, create as create_cid, from_string as cid_from_string
from identity import verify_signature
from monitoring.logging import LoggingContext, set_validation_context
from monitoring.metrics import MetricsCollector, metrics as default_metrics
from plc_errors import PlcError
from plc_operations import (
    AnyOperation,
    IndexedOperation,
    LegacyCreateOperation,
    Tombstone,
    normalize_operation,
)

logger = logging.getLogger(__name__)

DID_PLC_PREFIX = "did:plc:"
DID_PLC_ID_LENGTH = 24

# verify(did_key, signature, message) -> bool
SignatureVerifier = Callable[[str, bytes, bytes], bool]


# =============================================================================
# Hashing
# =============================================================================

def encode_operation(op: AnyOperation) -> bytes:
    """Canonical CBOR of a signed operation."""
    return canonical_cbor.encode(op.to_dict())


def encode_unsigned_operation(op: AnyOperation) -> bytes:
    """Canonical CBOR of an operation without its `sig`, the signed message."""
    return canonical_cbor.encode(op.unsigned_dict())


def compute_operation_cid(op: AnyOperation) -> Cid:
    """DAG-CBOR CID of a signed operation."""
    return create_cid(CODEC_DCBOR, encode_operation(op))


def derive_did(genesis: AnyOperation) -> str:
    """The did:plc identifier certified by a genesis operation."""
    digest = hashlib.sha256(encode_operation(genesis)).digest()
    return DID_PLC_PREFIX + to_base32(digest)[:DID_PLC_ID_LENGTH]


@lru_cache(maxsize=4096)
def _parse_cid(text: str) -> Cid:
    return cid_from_string(text)


# =============================================================================
# Results
# =============================================================================

@dataclass(frozen=True)
class StepResult:
    """Outcome of validating one proposed operation."""
    prev: str | None
    ops: list[IndexedOperation]
    nullified: list[IndexedOperation]


@dataclass(frozen=True)
class ValidationResult:
    """
    Outcome of validating a whole log.

    Attributes:
        canonical: The surviving, authority-respecting chain in order
        nullified: Every operation superseded by a valid recovery
    """
    canonical: list[IndexedOperation]
    nullified: list[IndexedOperation]

    @property
    def tip(self) -> IndexedOperation:
        return self.canonical[-1]

    @property
    def is_tombstoned(self) -> bool:
        return self.tip.is_tombstone


# =============================================================================
# Validator
# =============================================================================

class OperationLogValidator:
    """
    Validates did:plc operation logs.

    Each call to validate_log() is an independent fold with no state shared
    between calls, so one validator may serve logs of many DIDs, including from
    several threads.
    """

    def __init__(
        self,
        verifier: SignatureVerifier | None = None,
        config: ValidatorConfig | None = None,
        metrics: MetricsCollector | None = None,
    ):
        """
        Args:
            verifier: Signature check `(did_key, signature, message) -> bool`.
                Defaults to identity.verify_signature.
            config: Validation settings; defaults to ValidatorConfig().
            metrics: Collector for counters and timings; defaults to the
                global collector.
        """
        self.config = config or ValidatorConfig()
        self.verifier = verifier or partial(
            verify_signature, allow_malleable=self.config.allow_malleable_sig
        )
        self.metrics = metrics or default_metrics

    def is_signed_operation_valid(self, allowed_keys: Sequence[str], op: AnyOperation) -> str | None:
        """
        Find the rotation key that signed an operation.

        Keys are tried in order, so the most powerful matching key wins.

        Returns:
            The first key in `allowed_keys` whose signature verifies, or None
        """
        try:
            sig = from_base64url(op.sig)
        except ValueError as e:
            logger.debug("Undecodable signature: %s", e)
            return None

        message = encode_unsigned_operation(op)
        for key in allowed_keys:
            if self.verifier(key, sig, message):
                return key

        return None

    def _check_hash(self, proposed: IndexedOperation) -> None:
        expected = compute_operation_cid(proposed.operation)
        if expected != _parse_cid(proposed.cid):
            raise PlcError.invalid_hash(proposed.cid, str(expected))

    def _validate_genesis(self, did: str, proposed: IndexedOperation) -> StepResult:
        op = proposed.operation

        if isinstance(op, Tombstone):
            raise PlcError.improper_operation(proposed.cid, "expected genesis op to not be tombstone")

        if op.prev is not None:
            raise PlcError.improper_operation(proposed.cid, "expected null prev on genesis op")

        expected_did = derive_did(op)
        if expected_did != did:
            raise PlcError.genesis_hash(proposed.cid, did, expected_did)

        self._check_hash(proposed)

        rotation_keys = normalize_operation(op).rotation_keys
        if self.is_signed_operation_valid(rotation_keys, op) is None:
            raise PlcError.invalid_signature(proposed.cid)

        return StepResult(prev=None, ops=[proposed], nullified=[])

    def validate_indexed_operation(
        self,
        did: str,
        history: Sequence[IndexedOperation],
        proposed: IndexedOperation,
    ) -> StepResult:
        """
        Validate one proposed operation against the canonical history.

        Args:
            did: The DID whose log is being replayed
            history: Canonical operations accepted so far (not modified)
            proposed: The next operation from the log

        Returns:
            StepResult with the new canonical history and the operations this
            step nullified

        Raises:
            PlcError: If the operation is improper, tampered or unauthorized
        """
        if proposed.did != did:
            raise PlcError.improper_operation(proposed.cid, f"operation belongs to {proposed.did}")

        if not history:
            return self._validate_genesis(did, proposed)

        op = proposed.operation
        if isinstance(op, LegacyCreateOperation):
            raise PlcError.improper_operation(proposed.cid, "legacy create op after genesis")

        self._check_hash(proposed)

        if op.prev is None:
            raise PlcError.improper_operation(proposed.cid, "expected prev op")

        prev_cid = _parse_cid(op.prev)
        index_of_prev = next(
            (idx for idx, entry in enumerate(history) if _parse_cid(entry.cid) == prev_cid),
            -1,
        )
        if index_of_prev == -1:
            raise PlcError.improper_operation(proposed.cid, "prev op not in history")

        altered_history = list(history[:index_of_prev + 1])
        nullified = list(history[index_of_prev + 1:])
        last_op = altered_history[-1]

        if last_op.is_tombstone:
            raise PlcError.improper_operation(proposed.cid, "did is tombstoned")

        rotation_keys = normalize_operation(last_op.operation).rotation_keys

        if not nullified:
            if self.is_signed_operation_valid(rotation_keys, op) is None:
                raise PlcError.invalid_signature(proposed.cid)

            return StepResult(prev=op.prev, ops=[*history, proposed], nullified=[])

        # Recovery: the proposed operation forks around `nullified`
        if self.config.strict_nullified_flags:
            for entry in nullified:
                if not entry.nullified:
                    raise PlcError.improper_operation(entry.cid, "expected nullified prop to be true")

        first_nullified = nullified[0]

        lapsed = proposed.created_at - first_nullified.created_at
        if lapsed > self.config.recovery_window:
            raise PlcError.late_recovery(proposed.cid, lapsed.total_seconds())

        disputed_signer = self.is_signed_operation_valid(rotation_keys, first_nullified.operation)
        if disputed_signer is None:
            raise PlcError.invalid_signature(
                first_nullified.cid, "disputed operation is not signed by any rotation key"
            )

        more_powerful_keys = rotation_keys[:rotation_keys.index(disputed_signer)]
        if self.is_signed_operation_valid(more_powerful_keys, op) is None:
            raise PlcError.invalid_signature(
                proposed.cid, "recovery is not signed by a more powerful rotation key"
            )

        logger.info(
            "Recovery at %s nullifies %d operation(s)", proposed.cid, len(nullified),
            extra={"disputed_signer": disputed_signer},
        )
        return StepResult(prev=op.prev, ops=[*altered_history, proposed], nullified=nullified)

    def validate_log(self, did: str, log: Iterable[IndexedOperation]) -> ValidationResult:
        """
        Fold an ordered operation log into its canonical chain.

        Raises:
            ValueError: If the log is empty
            PlcError: On the first operation that fails validation
            canonical_cbor.CborError, content_id.CidError: On codec failures
        """
        canonical: list[IndexedOperation] = []
        nullified: list[IndexedOperation] = []

        with LoggingContext(did=did), self.metrics.timer("log_validation_ms"):
            try:
                for proposed in log:
                    set_validation_context(cid=proposed.cid)

                    step = self.validate_indexed_operation(did, canonical, proposed)
                    canonical = step.ops
                    if step.nullified:
                        nullified = nullified + step.nullified
                        self.metrics.increment("recoveries_total")

                    self.metrics.increment("operations_validated_total")
                    logger.debug("Accepted operation %s", proposed.cid)
            except PlcError as e:
                self.metrics.increment("logs_rejected_total", labels={"kind": e.kind.value})
                logger.warning("Rejected operation log: %s", e, extra={"error": e.to_dict()})
                raise
            except (canonical_cbor.CborError, CidError) as e:
                self.metrics.increment("logs_rejected_total", labels={"kind": "decode"})
                logger.warning("Rejected operation log: %s", e)
                raise

            if not canonical:
                raise ValueError("operation log is empty")

        self.metrics.increment("logs_validated_total")
        logger.info(
            "Validated operation log: %d canonical, %d nullified",
            len(canonical), len(nullified),
        )
        return ValidationResult(canonical=canonical, nullified=nullified)


# =============================================================================
# Convenience functions
# =============================================================================

def validate_operation_log(
    did: str,
    log: Iterable[IndexedOperation],
    verifier: SignatureVerifier | None = None,
    config: ValidatorConfig | None = None,
) -> ValidationResult:
    """Validate a log with a one-off validator."""
    return OperationLogValidator(verifier=verifier, config=config).validate_log(did, log)


def validate_indexed_operation(
    did: str,
    history: Sequence[IndexedOperation],
    proposed: IndexedOperation,
    verifier: SignatureVerifier | None = None,
    config: ValidatorConfig | None = None,
) -> StepResult:
    """Validate a single step with a one-off validator."""
    return OperationLogValidator(verifier=verifier, config=config).validate_indexed_operation(
        did, history, proposed
    )
