from datetime import datetime
from typing import Any, Dict, List

REQUIRED_FIELDS = ["id", "updated_at"]
OPTIONAL_OBJECT_FIELDS = ["taxon", "user", "geojson"]
OPTIONAL_STR_FIELDS = [
    "quality_grade",
    "species_guess",
    "location",
    "observed_on",
]


def _is_present(v: Any) -> bool:
    if v is None:
        return False
    if isinstance(v, str):
        return v.strip() != ""
    return True


def _valid_timestamp(v: Any) -> bool:
    if not isinstance(v, str):
        return False
    try:
        datetime.fromisoformat(v.strip().replace("Z", "+00:00"))
        return True
    except ValueError:
        return False


def validate_observation(data: Dict[str, Any]) -> List[str]:
    """
    Returns a list of validation error messages. Empty list means valid.

    Only the fields a stored row cannot exist without are required: the
    immutable id and the update timestamp used as the sync watermark.
    Everything else is optional and nulled by the normalizer.
    """
    if not isinstance(data, dict):
        return ["Observation must be a JSON object"]

    errors: List[str] = []

    for f in REQUIRED_FIELDS:
        if f not in data:
            errors.append(f"Missing required field: {f}")
        elif not _is_present(data[f]):
            errors.append(f"Field '{f}' must not be empty")

    if _is_present(data.get("id")) and isinstance(data["id"], bool):
        errors.append("Field 'id' must be a number or string")

    if _is_present(data.get("updated_at")) and not _valid_timestamp(data["updated_at"]):
        errors.append("Field 'updated_at' must be an ISO-8601 timestamp")

    # Optional nested objects: if present and not null, must be objects
    for f in OPTIONAL_OBJECT_FIELDS:
        if data.get(f) is not None and not isinstance(data[f], dict):
            errors.append(f"Field '{f}' must be an object if provided")

    for f in OPTIONAL_STR_FIELDS:
        if data.get(f) is not None and not isinstance(data[f], str):
            errors.append(f"Field '{f}' must be a string if provided")

    return errors
