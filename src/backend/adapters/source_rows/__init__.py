"""Source row adapters (no I/O): raw customer rows -> canonical transaction records."""

from .derivations import register_derivation, registry
from .transform import CanonicalRecord, normalize_value, transform_row, validate_mapping_spec

__all__ = [
    "CanonicalRecord",
    "normalize_value",
    "register_derivation",
    "registry",
    "transform_row",
    "validate_mapping_spec",
]
