import os
import sys


# Ensure `src/backend` is on sys.path so imports like `import adapters...` work when running this folder alone.
BACKEND_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "../.."))
if BACKEND_DIR not in sys.path:
    sys.path.insert(0, BACKEND_DIR)

import pytest

from common.campaigns.models import DerivedField, MappingSpec


@pytest.fixture
def make_mapping_spec():
    def _make(
        *,
        field_mappings=None,
        derived_fields=(),
        passthrough_fields=(),
        source_key_fields=(),
        participant_field: str = "participantId",
    ) -> MappingSpec:
        return MappingSpec(
            field_mappings=field_mappings if field_mappings is not None else {
                "customer_id": "participantId",
                "sale_amount": "amount",
            },
            derived_fields=[d if isinstance(d, DerivedField) else DerivedField(**d) for d in derived_fields],
            passthrough_fields=list(passthrough_fields),
            source_key_fields=list(source_key_fields),
            participant_field=participant_field,
        )

    return _make
