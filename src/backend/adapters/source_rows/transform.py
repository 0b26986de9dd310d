from __future__ import annotations

import json
import math
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Iterable, Mapping

from common.campaigns.models import MappingSpec, new_id
from common.errors import ConfigurationError, TransformError
from common.rules_engine.context import InvalidOperandError

from .derivations import registry


RECORD_ID_NAMESPACE = uuid.UUID("5b1d9c7e-3f0a-4a53-9a43-6f1e0c2d8b71")


@dataclass(frozen=True)
class CanonicalRecord:
    record_id: str
    participant_id: str
    fields: dict[str, Any] = field(default_factory=dict)


def validate_mapping_spec(spec: MappingSpec) -> None:
    known = set(registry.names())
    for derived in spec.derived_fields:
        if derived.function not in known:
            raise ConfigurationError(
                f"Unknown derived-field function '{derived.function}' for '{derived.target}'",
                detail=f"expected one of: {', '.join(sorted(known))}",
            )


def transform_row(
    row: Mapping[str, Any],
    spec: MappingSpec,
    *,
    campaign_id: str,
    retain: Iterable[str] = (),
) -> CanonicalRecord:
    """
    Map one raw source row onto the campaign's canonical record shape.

    - `field_mappings` renames source columns; with no mappings every column is kept as-is.
    - Unmapped columns are dropped unless listed in `passthrough_fields` or `retain`
      (the orchestrator passes the fields the campaign's rules read).
    - Derived fields read the renamed fields; a missing, non-numeric or non-finite source yields 0.
    """
    if not isinstance(row, Mapping):
        raise TransformError(f"Source row must be a mapping, got {type(row).__name__}.")

    if spec.field_mappings:
        fields = {
            target: normalize_value(row[source])
            for source, target in spec.field_mappings.items()
            if source in row
        }
        for name in (*spec.passthrough_fields, *retain):
            if name not in fields and name in row:
                fields[name] = normalize_value(row[name])
    else:
        fields = {str(k): normalize_value(v) for k, v in row.items()}

    for derived in spec.derived_fields:
        fields[derived.target] = _derive(fields.get(derived.source), derived.function, derived.argument)

    participant = fields.get(spec.participant_field)
    if participant is None or not str(participant).strip():
        raise TransformError(f"Row has no participant reference in '{spec.participant_field}'.")

    return CanonicalRecord(
        record_id=_record_id(campaign_id, fields, spec.source_key_fields),
        participant_id=str(participant).strip(),
        fields=fields,
    )


def normalize_value(value: Any) -> Any:
    """Convert a driver value to a JSON-safe one; NaN and infinities become None (missing)."""
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, Decimal):
        if not value.is_finite():
            return None
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    if isinstance(value, Mapping):
        return {str(k): normalize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [normalize_value(v) for v in value]
    return value


def _derive(value: Any, function: str, argument: Decimal | None) -> Any:
    if value is None:
        return 0
    try:
        return registry.get(function)(value, argument)
    except KeyError as exc:
        raise ConfigurationError(f"Unknown derived-field function '{function}'") from exc
    except (InvalidOperandError, ArithmeticError):
        return 0


def _record_id(campaign_id: str, fields: Mapping[str, Any], key_fields: list[str]) -> str:
    if not key_fields:
        return new_id("txn")
    values = []
    for name in key_fields:
        value = fields.get(name)
        if value is None:
            raise TransformError(f"Row is missing source key field '{name}'.")
        values.append(value)
    raw = json.dumps([campaign_id, values], sort_keys=True, default=str)
    return f"txn_{uuid.uuid5(RECORD_ID_NAMESPACE, raw).hex}"
