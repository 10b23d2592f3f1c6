"""
did:plc validation errors.

Every failure in an operation-log fold is fatal to that fold. Instead of one
subclass per failure, a single exception type carries an ErrorKind tag so
callers can match exhaustively on `error.kind`. Each error records the CID of
the offending operation and a human-readable reason, plus structured context
for logging and monitoring.

Codec and CID errors (canonical_cbor.CborError, content_id.CidError) and schema
errors (plc_operations.OperationSchemaError) are not wrapped; they propagate
through the validator unchanged.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class ErrorKind(Enum):
    """Failure classes of an operation-log fold."""
    IMPROPER_OPERATION = "improper_operation"  # Structurally invalid for its position
    INVALID_HASH = "invalid_hash"              # Declared CID differs from the recomputed one
    GENESIS_HASH = "genesis_hash"              # DID is not derived from the genesis operation
    INVALID_SIGNATURE = "invalid_signature"    # No allowed rotation key verifies
    LATE_RECOVERY = "late_recovery"            # Fork arrived after the recovery window


@dataclass
class ErrorContext:
    """Structured context for error tracking and debugging."""
    component: str
    action: str
    timestamp: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "component": self.component,
            "action": self.action,
            "timestamp": self.timestamp,
            "details": self.details,
        }


class PlcError(Exception):
    """
    A fatal failure while validating a did:plc operation log.

    Attributes:
        kind: Which failure class this is
        cid: CID string of the offending operation
        reason: Explanation of what was wrong
        context: Structured context for logging
    """

    def __init__(
        self,
        kind: ErrorKind,
        cid: str,
        reason: str,
        details: dict[str, Any] | None = None,
    ):
        self.kind = kind
        self.cid = cid
        self.reason = reason
        self.context = ErrorContext(
            component="plc_validator",
            action=kind.value,
            details={"cid": cid, **(details or {})},
        )
        super().__init__(self._format())

    def _format(self) -> str:
        return f"{self.kind.value.replace('_', ' ')}; cid={self.cid}; reason={self.reason}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": type(self).__name__,
            "kind": self.kind.value,
            "cid": self.cid,
            "reason": self.reason,
            **self.context.to_dict(),
        }

    # Constructors per taxonomy entry

    @classmethod
    def improper_operation(cls, cid: str, reason: str) -> "PlcError":
        return cls(ErrorKind.IMPROPER_OPERATION, cid, reason)

    @classmethod
    def invalid_hash(cls, cid: str, expected: str) -> "PlcError":
        return cls(
            ErrorKind.INVALID_HASH,
            cid,
            f"expected cid {expected}",
            details={"expected": expected},
        )

    @classmethod
    def genesis_hash(cls, cid: str, did: str, expected_did: str) -> "PlcError":
        return cls(
            ErrorKind.GENESIS_HASH,
            cid,
            f"genesis operation derives {expected_did}, not {did}",
            details={"did": did, "expected_did": expected_did},
        )

    @classmethod
    def invalid_signature(cls, cid: str, reason: str = "no allowed rotation key verifies") -> "PlcError":
        return cls(ErrorKind.INVALID_SIGNATURE, cid, reason)

    @classmethod
    def late_recovery(cls, cid: str, lapsed_seconds: float) -> "PlcError":
        return cls(
            ErrorKind.LATE_RECOVERY,
            cid,
            f"recovery occurred {lapsed_seconds:.3f}s after the first nullified operation",
            details={"lapsed_seconds": lapsed_seconds},
        )
