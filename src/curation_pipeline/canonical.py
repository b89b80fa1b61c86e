"""RFC 8785 canonical JSON for persisted resource envelopes and version signatures."""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import date, datetime
from enum import Enum
from typing import Any

import rfc8785
from pydantic import BaseModel

from .models import RESOURCE_MODELS, Resource

logger = logging.getLogger(__name__)

_JSON_SCALARS = (bool, int, float, str, type(None))


def _to_json_primitives(value: Any) -> Any:
    """Reduce *value* to the types ``rfc8785.dumps`` accepts.

    Raises:
        TypeError: For bytes and any type without a JSON form.
    """
    if isinstance(value, Enum):
        return _to_json_primitives(value.value)
    if isinstance(value, _JSON_SCALARS):
        return value
    if isinstance(value, BaseModel):
        return _to_json_primitives(value.model_dump(mode="json"))
    if isinstance(value, dict):
        return {str(key): _to_json_primitives(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        items = [_to_json_primitives(item) for item in value]
        return sorted(items) if isinstance(value, (set, frozenset)) else items
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, bytes):
        raise TypeError("bytes have no canonical JSON form; store binaries through a storage adapter")
    raise TypeError(f"Cannot serialize type {type(value).__name__} to canonical JSON")


def to_canonical_json(value: Any) -> str:
    return rfc8785.dumps(_to_json_primitives(value)).decode("utf-8")


def canonical_digest(value: Any) -> str:
    """SHA-256 hex digest of the canonical JSON form of *value*."""
    return hashlib.sha256(to_canonical_json(value).encode("utf-8")).hexdigest()


def dump_resource(resource: Resource) -> str:
    """Serialize *resource* inside a ``{"model": ..., "resource": ...}`` envelope."""
    return to_canonical_json({"model": type(resource).__name__, "resource": resource})


def load_resource(text: str) -> Resource:
    """Rebuild a resource from an envelope written by ``dump_resource``.

    Raises:
        ValueError: If the envelope names an unknown model or is malformed.
        pydantic.ValidationError: If the stored attributes no longer validate.
    """
    payload = json.loads(text)
    if not isinstance(payload, dict) or "model" not in payload or "resource" not in payload:
        raise ValueError("resource envelope must contain 'model' and 'resource' keys")
    model = RESOURCE_MODELS.get(payload["model"])
    if model is None:
        raise ValueError(f"unknown resource model in envelope: {payload['model']!r}")
    return model.model_validate(payload["resource"])
