"""
Tests for observation validation.
"""

import pytest
from bioblitz.schema import validate_observation


class TestValidateObservation:
    """Test upstream observation checks."""

    def test_valid_observation(self, observation_factory):
        assert validate_observation(observation_factory(1)) == []

    def test_minimal_observation(self):
        """Only id and updated_at are required."""
        assert validate_observation({"id": 5, "updated_at": "2024-05-01T00:00:00Z"}) == []

    def test_string_id_accepted(self):
        assert validate_observation({"id": "abc-5", "updated_at": "2024-05-01T00:00:00+00:00"}) == []

    def test_missing_required_fields(self):
        errors = validate_observation({"species_guess": "poppy"})
        assert any("id" in err for err in errors)
        assert any("updated_at" in err for err in errors)

    def test_empty_id(self):
        errors = validate_observation({"id": "  ", "updated_at": "2024-05-01T00:00:00Z"})
        assert errors == ["Field 'id' must not be empty"]

    def test_boolean_id_rejected(self):
        errors = validate_observation({"id": True, "updated_at": "2024-05-01T00:00:00Z"})
        assert any("'id'" in err for err in errors)

    def test_bad_timestamp(self):
        errors = validate_observation({"id": 1, "updated_at": "yesterday"})
        assert any("ISO-8601" in err for err in errors)

    def test_non_object(self):
        assert validate_observation(["id", 1]) == ["Observation must be a JSON object"]

    @pytest.mark.parametrize("field", ["taxon", "user", "geojson"])
    def test_nested_field_must_be_object(self, field):
        data = {"id": 1, "updated_at": "2024-05-01T00:00:00Z", field: "oops"}
        errors = validate_observation(data)
        assert any(field in err for err in errors)

    def test_null_nested_fields_allowed(self):
        data = {"id": 1, "updated_at": "2024-05-01T00:00:00Z", "taxon": None, "user": None, "geojson": None}
        assert validate_observation(data) == []

    def test_string_field_type(self):
        data = {"id": 1, "updated_at": "2024-05-01T00:00:00Z", "quality_grade": 3}
        errors = validate_observation(data)
        assert any("quality_grade" in err for err in errors)
