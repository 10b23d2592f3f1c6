"""
did:plc operation data model.

Operation kinds:
    - Operation ("plc_operation"): rotation keys, verification methods,
      alsoKnownAs and services, plus the `prev` CID and a detached `sig`
    - LegacyCreateOperation ("create"): the original genesis format, only valid
      as the first entry of a log
    - Tombstone ("plc_tombstone"): terminal, no operation may follow it

IndexedOperation wraps an operation with the facts reported by the directory's
audit log (owner DID, claimed CID, asserted nullification, creation time).

Rotation keys are ordered by authority: index 0 is the most powerful key.
That order is never sorted or otherwise rearranged.

Parsing is strict: unknown fields, wrong types and out-of-range sizes raise
OperationSchemaError. Operations keep exactly the fields they were parsed
from, so to_dict() reproduces the hashed and signed content.
"""

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Union

from content_id import CidError, from_string as cid_from_string
from identity import parse_did_key

OP_TYPE_OPERATION = "plc_operation"
OP_TYPE_TOMBSTONE = "plc_tombstone"
OP_TYPE_LEGACY_CREATE = "create"

DID_PLC_RE = re.compile(r"^did:plc:([a-z2-7]{24})$")

# Schema limits
MAX_ROTATION_KEYS = 10
MAX_ALSO_KNOWN_AS = 10
MAX_SERVICES = 10
MAX_ID_LENGTH = 32
MAX_AKA_LENGTH = 256
MAX_HANDLE_LENGTH = 256
MAX_SERVICE_TYPE_LENGTH = 256
MAX_ENDPOINT_LENGTH = 512

ATPROTO_PDS_SERVICE_ID = "atproto_pds"
ATPROTO_PDS_SERVICE_TYPE = "AtprotoPersonalDataServer"
ATPROTO_VERIFICATION_METHOD = "atproto"


class OperationSchemaError(ValueError):
    """Raised when an operation or audit-log entry is structurally invalid."""

    def __init__(self, message: str, path: str = ""):
        self.path = path
        super().__init__(f"{path}: {message}" if path else message)


# =============================================================================
# Field helpers
# =============================================================================

def _check_fields(data: Any, required: set[str], path: str) -> None:
    if not isinstance(data, dict):
        raise OperationSchemaError("expected an object", path)

    missing = required - data.keys()
    if missing:
        raise OperationSchemaError(f"missing fields {sorted(missing)}", path)

    unknown = data.keys() - required
    if unknown:
        raise OperationSchemaError(f"unexpected fields {sorted(unknown)}", path)


def _string(value: Any, path: str, max_length: int | None = None) -> str:
    if not isinstance(value, str):
        raise OperationSchemaError("expected a string", path)
    if max_length is not None and len(value) > max_length:
        raise OperationSchemaError(f"too long (max {max_length} characters)", path)
    return value


def _did_key(value: Any, path: str) -> str:
    value = _string(value, path)
    try:
        parse_did_key(value)
    except ValueError as e:
        raise OperationSchemaError(f"invalid did:key ({e})", path) from e
    return value


def _cid_string(value: Any, path: str) -> str:
    value = _string(value, path)
    try:
        cid_from_string(value)
    except CidError as e:
        raise OperationSchemaError(f"invalid cid ({e})", path) from e
    return value


def _nullable_cid(value: Any, path: str) -> str | None:
    return None if value is None else _cid_string(value, path)


def _unique_list(value: Any, path: str, max_items: int, item) -> list[str]:
    if not isinstance(value, list):
        raise OperationSchemaError("expected an array", path)
    if len(value) > max_items:
        raise OperationSchemaError(f"too many entries (max {max_items})", path)

    seen = set()
    result = []
    for idx, entry in enumerate(value):
        entry = item(entry, f"{path}[{idx}]")
        if entry in seen:
            raise OperationSchemaError(f'duplicate "{entry}" entry', f"{path}[{idx}]")
        seen.add(entry)
        result.append(entry)
    return result


def _record(value: Any, path: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise OperationSchemaError("expected an object", path)
    for key in value:
        if len(key) > MAX_ID_LENGTH:
            raise OperationSchemaError(f"id too long (max {MAX_ID_LENGTH} characters)", f"{path}.{key}")
    return value


# =============================================================================
# Operations
# =============================================================================

@dataclass(frozen=True)
class Service:
    """A named service endpoint."""
    type: str
    endpoint: str

    def to_dict(self) -> dict[str, str]:
        return {"type": self.type, "endpoint": self.endpoint}

    @classmethod
    def from_dict(cls, data: Any, path: str = "service") -> "Service":
        _check_fields(data, {"type", "endpoint"}, path)
        return cls(
            type=_string(data["type"], f"{path}.type", MAX_SERVICE_TYPE_LENGTH),
            endpoint=_string(data["endpoint"], f"{path}.endpoint", MAX_ENDPOINT_LENGTH),
        )


@dataclass(frozen=True)
class Operation:
    """
    A regular did:plc operation.

    Attributes:
        prev: CID string of the operation this extends, None only for genesis
        rotation_keys: did:keys allowed to sign the next operation, most
            powerful first
        verification_methods: Named did:keys published in the DID document
        also_known_as: Alias URIs
        services: Named service endpoints
        sig: base64url signature over the unsigned operation
    """
    prev: str | None
    rotation_keys: list[str]
    verification_methods: dict[str, str]
    also_known_as: list[str]
    services: dict[str, Service]
    sig: str
    type: str = OP_TYPE_OPERATION

    def unsigned_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "prev": self.prev,
            "rotationKeys": list(self.rotation_keys),
            "verificationMethods": dict(self.verification_methods),
            "alsoKnownAs": list(self.also_known_as),
            "services": {name: svc.to_dict() for name, svc in self.services.items()},
        }

    def to_dict(self) -> dict[str, Any]:
        return {**self.unsigned_dict(), "sig": self.sig}

    @classmethod
    def from_dict(cls, data: Any, path: str = "operation") -> "Operation":
        _check_fields(
            data,
            {"type", "prev", "rotationKeys", "verificationMethods", "alsoKnownAs", "services", "sig"},
            path,
        )

        rotation_keys = _unique_list(
            data["rotationKeys"], f"{path}.rotationKeys", MAX_ROTATION_KEYS, _did_key
        )
        if not rotation_keys:
            raise OperationSchemaError("missing rotation keys", f"{path}.rotationKeys")

        methods = _record(data["verificationMethods"], f"{path}.verificationMethods")
        services = _record(data["services"], f"{path}.services")
        if len(services) > MAX_SERVICES:
            raise OperationSchemaError(
                f"too many service entries (max {MAX_SERVICES})", f"{path}.services"
            )

        return cls(
            prev=_nullable_cid(data["prev"], f"{path}.prev"),
            rotation_keys=rotation_keys,
            verification_methods={
                name: _did_key(key, f"{path}.verificationMethods.{name}")
                for name, key in methods.items()
            },
            also_known_as=_unique_list(
                data["alsoKnownAs"],
                f"{path}.alsoKnownAs",
                MAX_ALSO_KNOWN_AS,
                lambda value, p: _string(value, p, MAX_AKA_LENGTH),
            ),
            services={
                name: Service.from_dict(svc, f"{path}.services.{name}")
                for name, svc in services.items()
            },
            sig=_string(data["sig"], f"{path}.sig"),
        )


@dataclass(frozen=True)
class LegacyCreateOperation:
    """The original genesis format, superseded by plc_operation."""
    signing_key: str
    recovery_key: str
    handle: str
    service: str
    sig: str
    prev: None = None
    type: str = OP_TYPE_LEGACY_CREATE

    def unsigned_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "prev": None,
            "signingKey": self.signing_key,
            "recoveryKey": self.recovery_key,
            "handle": self.handle,
            "service": self.service,
        }

    def to_dict(self) -> dict[str, Any]:
        return {**self.unsigned_dict(), "sig": self.sig}

    @classmethod
    def from_dict(cls, data: Any, path: str = "operation") -> "LegacyCreateOperation":
        _check_fields(
            data, {"type", "prev", "signingKey", "recoveryKey", "handle", "service", "sig"}, path
        )
        if data["prev"] is not None:
            raise OperationSchemaError("expected null", f"{path}.prev")

        return cls(
            signing_key=_did_key(data["signingKey"], f"{path}.signingKey"),
            recovery_key=_did_key(data["recoveryKey"], f"{path}.recoveryKey"),
            handle=_string(data["handle"], f"{path}.handle", MAX_HANDLE_LENGTH),
            service=_string(data["service"], f"{path}.service", MAX_ENDPOINT_LENGTH),
            sig=_string(data["sig"], f"{path}.sig"),
        )


@dataclass(frozen=True)
class Tombstone:
    """Terminal operation; the DID is deactivated once it is canonical."""
    prev: str
    sig: str
    type: str = OP_TYPE_TOMBSTONE

    def unsigned_dict(self) -> dict[str, Any]:
        return {"type": self.type, "prev": self.prev}

    def to_dict(self) -> dict[str, Any]:
        return {**self.unsigned_dict(), "sig": self.sig}

    @classmethod
    def from_dict(cls, data: Any, path: str = "operation") -> "Tombstone":
        _check_fields(data, {"type", "prev", "sig"}, path)
        return cls(
            prev=_cid_string(data["prev"], f"{path}.prev"),
            sig=_string(data["sig"], f"{path}.sig"),
        )


AnyOperation = Union[Operation, LegacyCreateOperation, Tombstone]

_OPERATION_TYPES = {
    OP_TYPE_OPERATION: Operation,
    OP_TYPE_LEGACY_CREATE: LegacyCreateOperation,
    OP_TYPE_TOMBSTONE: Tombstone,
}


def parse_operation(data: Any, path: str = "operation", allow_legacy: bool = True) -> AnyOperation:
    """
    Parse a signed operation mapping.

    Args:
        data: Operation as decoded from JSON
        path: Location used in error messages
        allow_legacy: Whether a legacy "create" operation is acceptable here

    Raises:
        OperationSchemaError: If the mapping is not a valid operation
    """
    if not isinstance(data, dict):
        raise OperationSchemaError("expected an object", path)

    op_type = data.get("type")
    op_cls = _OPERATION_TYPES.get(op_type)
    if op_cls is None or (op_cls is LegacyCreateOperation and not allow_legacy):
        raise OperationSchemaError(f"unexpected operation type {op_type!r}", f"{path}.type")

    return op_cls.from_dict(data, path)


def wrap_http_prefix(value: str) -> str:
    if value.startswith("http://") or value.startswith("https://"):
        return value
    return f"https://{value}"


def wrap_atproto_prefix(value: str) -> str:
    if value.startswith("at://"):
        return value
    stripped = value.replace("http://", "").replace("https://", "")
    return f"at://{stripped}"


def normalize_operation(op: Operation | LegacyCreateOperation) -> Operation:
    """
    Convert a legacy create operation to the plc_operation shape.

    The recovery key outranks the signing key. Regular operations are returned
    unchanged.
    """
    if isinstance(op, Operation):
        return op

    return Operation(
        prev=None,
        rotation_keys=[op.recovery_key, op.signing_key],
        verification_methods={ATPROTO_VERIFICATION_METHOD: op.signing_key},
        also_known_as=[wrap_atproto_prefix(op.handle)],
        services={
            ATPROTO_PDS_SERVICE_ID: Service(
                type=ATPROTO_PDS_SERVICE_TYPE,
                endpoint=wrap_http_prefix(op.service),
            )
        },
        sig=op.sig,
    )


# =============================================================================
# Indexed operations
# =============================================================================

def parse_timestamp(value: Any, path: str = "createdAt") -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if isinstance(value, datetime):
        parsed = value
    else:
        value = _string(value, path)
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError as e:
            raise OperationSchemaError("invalid timestamp", path) from e

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def format_timestamp(value: datetime) -> str:
    """Format a timestamp the way the directory does (millisecond precision, Z)."""
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class IndexedOperation:
    """
    An operation as reported by the directory's audit log.

    `nullified` is what the source asserts; the validator recomputes
    nullification itself and never trusts this flag in place of that.
    """
    did: str
    operation: AnyOperation
    cid: str
    nullified: bool
    created_at: datetime
    extra: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def is_tombstone(self) -> bool:
        return isinstance(self.operation, Tombstone)

    def to_dict(self) -> dict[str, Any]:
        return {
            "did": self.did,
            "operation": self.operation.to_dict(),
            "cid": self.cid,
            "nullified": self.nullified,
            "createdAt": format_timestamp(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Any, path: str = "entry", allow_legacy: bool = True) -> "IndexedOperation":
        if not isinstance(data, dict):
            raise OperationSchemaError("expected an object", path)

        required = {"did", "operation", "cid", "nullified", "createdAt"}
        missing = required - data.keys()
        if missing:
            raise OperationSchemaError(f"missing fields {sorted(missing)}", path)

        did = _string(data["did"], f"{path}.did")
        if not DID_PLC_RE.match(did):
            raise OperationSchemaError("must be a did:plc", f"{path}.did")

        nullified = data["nullified"]
        if not isinstance(nullified, bool):
            raise OperationSchemaError("expected a boolean", f"{path}.nullified")

        return cls(
            did=did,
            operation=parse_operation(data["operation"], f"{path}.operation", allow_legacy),
            cid=_cid_string(data["cid"], f"{path}.cid"),
            nullified=nullified,
            created_at=parse_timestamp(data["createdAt"], f"{path}.createdAt"),
            # Keep anything else the directory adds, it is not hashed
            extra={k: v for k, v in data.items() if k not in required},
        )
