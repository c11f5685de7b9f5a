"""
Per-record telemetry validation.

A record is accepted when its kind is known, its payload is a JSON object and
its serialised payload fits the cap for that kind. Violations raise
ValidationFailure carrying the record index, so the route can report them
individually and keep the rest of the batch.
"""

import json
from typing import Any

from pydantic import ValidationError

from kubeheal.services.shared.errors import ValidationFailure
from kubeheal.services.shared.schemas import TelemetryRecordIn

KIB = 1024
MIB = 1024 * KIB

# Scalar metrics are tiny; list-shaped collections can get large on busy clusters.
KIND_SIZE_CAPS: dict[str, int] = {
    "cpu":              4 * KIB,
    "memory":           4 * KIB,
    "pods":             4 * KIB,
    "nodes":            256 * KIB,
    "storage":          256 * KIB,
    "node_storage":     256 * KIB,
    "security":         256 * KIB,
    "pod_details":      2 * MIB,
    "events":           2 * MIB,
    "pvcs":             2 * MIB,
    "standalone_pvs":   2 * MIB,
    "security_threats": 2 * MIB,
}


def payload_size(payload: dict) -> int:
    return len(json.dumps(payload, separators=(",", ":"), default=str).encode())


def validate_record(index: int, raw: Any) -> tuple[TelemetryRecordIn, int]:
    """Return the parsed record and its payload size, or raise ValidationFailure."""
    kind = raw.get("kind") if isinstance(raw, dict) else None
    kind = kind if isinstance(kind, str) else None

    if not isinstance(raw, dict):
        raise ValidationFailure("record must be a JSON object", index=index)
    if not kind:
        raise ValidationFailure("kind is required", index=index)
    if not isinstance(raw.get("payload"), dict):
        raise ValidationFailure("payload must be a JSON object", index=index, kind=kind)

    try:
        record = TelemetryRecordIn.model_validate(raw)
    except ValidationError as exc:
        first = exc.errors()[0]
        loc = ".".join(str(p) for p in first.get("loc", ()))
        raise ValidationFailure(f"invalid {loc}: {first.get('msg')}", index=index, kind=kind)

    cap = KIND_SIZE_CAPS.get(record.kind)
    if cap is None:
        raise ValidationFailure(f"unsupported kind '{record.kind}'", index=index, kind=kind)

    size = payload_size(record.payload)
    if size > cap:
        raise ValidationFailure(
            f"payload too large: {size} bytes exceeds {cap} byte cap for '{record.kind}'",
            index=index,
            kind=kind,
        )
    return record, size
