"""External identity resolution.

The remote object's ID is chosen with a fixed precedence, first match wins:

1. The ID already recorded on the resource status. Never recomputed.
2. An ID embedded in the desired payload itself.
3. A deterministic encoding of the resource's namespace/name.

The fallback makes creation idempotent: if the operator crashes between
creating the remote object and persisting its ID, the retry computes the same
ID and finds the object instead of creating a duplicate.
"""

from __future__ import annotations

import base64
import logging
from collections.abc import Sequence
from typing import Any

from .models import ObjectKey
from .status import try_extract

logger = logging.getLogger(__name__)


def encode_key(key: ObjectKey) -> str:
    """Encode ``namespace/name`` as unpadded URL-safe base64."""
    raw = str(key).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_key(encoded: str) -> ObjectKey:
    """Inverse of encode_key."""
    padding = "=" * (-len(encoded) % 4)
    raw = base64.urlsafe_b64decode(encoded + padding).decode("utf-8")
    return ObjectKey.parse(raw)


def embedded_id(payload: dict[str, Any], paths: Sequence[tuple[str, ...]]) -> str:
    """Return the first non-empty string found at any of ``paths``."""
    for path in paths:
        value = try_extract(payload, path)
        if isinstance(value, str) and value:
            return value
    return ""


def resolve_external_id(
    key: ObjectKey,
    status_id: str,
    payload: dict[str, Any],
    id_paths: Sequence[tuple[str, ...]] = (),
) -> str:
    """Resolve the remote object's ID for a managed resource.

    Args:
        key: Namespace and name of the managed resource.
        status_id: ID already recorded on the resource status, may be empty.
        payload: Desired-state document submitted to the remote API.
        id_paths: Paths at which the payload may carry its own ID.

    Returns:
        The external ID, never empty.
    """
    if status_id:
        payload_id = embedded_id(payload, id_paths)
        if payload_id and payload_id != status_id:
            # Recorded ID wins; the divergence is surfaced, not reconciled
            logger.warning(
                "Payload ID differs from recorded external ID",
                extra={
                    "resource": str(key),
                    "external_id": status_id,
                    "payload_id": payload_id,
                },
            )
        return status_id

    payload_id = embedded_id(payload, id_paths)
    if payload_id:
        return payload_id

    return encode_key(key)
