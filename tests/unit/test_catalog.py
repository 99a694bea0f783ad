"""Unit tests for the object type catalog and property validation."""

from __future__ import annotations

import pytest

from infralens.catalog import (
    categories,
    default_criticality,
    get_type_spec,
    types_for,
    validate_properties,
)
from infralens.errors import InvalidObjectError
from infralens.models import Criticality


class TestCatalogLookup:
    def test_known_type(self):
        spec = get_type_spec("FIRE_SAFETY", "FIRE_EXTINGUISHER")
        assert spec.criticality == Criticality.CRITICAL
        assert "capacity" in spec.properties

    def test_unknown_type_rejected(self):
        with pytest.raises(InvalidObjectError):
            get_type_spec("FIRE_SAFETY", "DRAGON")

    def test_invalid_object_error_is_value_error(self):
        with pytest.raises(ValueError):
            get_type_spec("NOPE", "DOOR")

    def test_default_criticality(self):
        assert default_criticality("FURNITURE", "TABLE") == Criticality.NONE
        assert default_criticality("ARCHITECTURAL", "STAIR") == Criticality.HIGH
        assert default_criticality("ELECTRICAL", "OUTLET") == Criticality.MEDIUM

    def test_categories_and_types(self):
        assert "ELECTRICAL" in categories()
        assert "SWITCH" in types_for("ELECTRICAL")
        assert types_for("UNKNOWN") == []


class TestValidateProperties:
    def test_known_keys_are_coerced(self):
        props = validate_properties(
            "ARCHITECTURAL", "DOOR", {"width": "0.9", "height": 2, "material": "oak"}
        )
        assert props == {"width": 0.9, "height": 2.0, "material": "oak"}

    def test_bool_and_int_properties(self):
        props = validate_properties(
            "ARCHITECTURAL", "STAIR", {"steps": "12", "handrail": "true"}
        )
        assert props == {"steps": 12, "handrail": True}

    def test_uncoercible_value_rejected(self):
        with pytest.raises(InvalidObjectError, match="width"):
            validate_properties("ARCHITECTURAL", "DOOR", {"width": "wide"})

    def test_extension_keys_kept(self):
        props = validate_properties(
            "FURNITURE", "TABLE", {"vendor_sku": "T-100", "tags": ["round", "oak"]}
        )
        assert props["vendor_sku"] == "T-100"
        assert props["tags"] == ["round", "oak"]

    def test_extension_key_must_be_snake_case(self):
        with pytest.raises(InvalidObjectError, match="extension key"):
            validate_properties("FURNITURE", "TABLE", {"Vendor SKU": "T-100"})

    def test_extension_value_must_be_json(self):
        with pytest.raises(InvalidObjectError):
            validate_properties("FURNITURE", "TABLE", {"blob": object()})

    def test_none_values_kept(self):
        assert validate_properties("FURNITURE", "TABLE", {"material": None}) == {
            "material": None
        }

    def test_empty_properties(self):
        assert validate_properties("FURNITURE", "TABLE", None) == {}

    def test_unknown_type_rejected_even_without_properties(self):
        with pytest.raises(InvalidObjectError):
            validate_properties("FURNITURE", "SOFA", {})
