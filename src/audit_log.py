"""
Audit-log payload parsing.

A did:plc directory serves every operation it has seen for a DID, nullified
ones included, at `GET /<did>/log/audit`, as a JSON array of:

    {"did": ..., "operation": {...}, "cid": ..., "nullified": ..., "createdAt": ...}

Fetching the payload is up to the caller.

Usage:
    from audit_log import parse_audit_log

    log = parse_audit_log(response_body)
"""

import json
import logging
from typing import Any

from plc_operations import IndexedOperation, OperationSchemaError

logger = logging.getLogger(__name__)


def parse_audit_log(data: str | bytes | list[Any]) -> list[IndexedOperation]:
    """
    Parse an audit-log payload into IndexedOperations.

    Args:
        data: JSON text, UTF-8 bytes, or the already-decoded array

    Returns:
        Entries in the order the directory returned them

    Raises:
        OperationSchemaError: If the payload or any entry is malformed
    """
    if isinstance(data, (bytes, bytearray, str)):
        try:
            data = json.loads(data)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise OperationSchemaError(f"invalid JSON ({e})", "log") from e

    if not isinstance(data, list):
        raise OperationSchemaError("expected an array", "log")

    entries = [
        # Legacy create operations are only valid as genesis
        IndexedOperation.from_dict(entry, f"log[{idx}]", allow_legacy=idx == 0)
        for idx, entry in enumerate(data)
    ]

    logger.debug("Parsed audit log with %d entries", len(entries))
    return entries
