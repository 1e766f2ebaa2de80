"""
Metadata validation and cleanup for entries.

Entry metadata is a JSON object keyed by field-definition id:
- Required fields must map to a non-null value
- Values are checked against their field's type and options
- Keys that aren't field ids, or name a field that no longer exists,
  produce warnings only
- Orphan keys are removed lazily, when an entry is written

Malformed input never raises here: it becomes an error or warning in the
ValidationResult. Only storage failures propagate.
"""

import json
import logging
import math
import re
from datetime import datetime
from typing import Any, Callable, Optional

from .errors import MalformedInput
from .protocol import FieldDefinitionProvider
from .types import FieldDefinition, FieldType, ValidationResult, parse_field_id

logger = logging.getLogger(__name__)

_DATE_RE = re.compile(r'[0-9]{4}-[0-9]{2}-[0-9]{2}')


class _MetadataParseError(ValueError):
    pass


def _reject_constant(name: str) -> Any:
    raise ValueError(f"{name} is not a valid JSON number")


def _finite_float(text: str) -> float:
    value = float(text)
    if math.isinf(value):
        raise ValueError(f"number out of range: {text}")
    return value


def load_json_value(text: str) -> Any:
    """json.loads restricted to standard JSON: no NaN, Infinity or overflowing numbers."""
    return json.loads(text, parse_constant=_reject_constant, parse_float=_finite_float)


def _load_object(metadata_json: Optional[str]) -> dict[str, Any]:
    """Parse a metadata blob; absent means empty."""
    if metadata_json is None:
        return {}
    try:
        data = load_json_value(metadata_json)
    except (ValueError, TypeError) as e:
        raise _MetadataParseError(str(e))
    if not isinstance(data, dict):
        raise _MetadataParseError(f"expected a JSON object, got {type(data).__name__}")
    return data


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_integer(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _fmt_number(value: float) -> str:
    """Format a number the way it was written: 5.0 → "5", 2.5 → "2.5"."""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def parse_metadata(metadata_json: Optional[str], strict: bool = False) -> dict[int, Any]:
    """
    Map of field id → value. Keys that aren't field ids are dropped.

    An unparseable blob counts as empty, unless strict is set, in which
    case it raises MalformedInput.
    """
    try:
        data = _load_object(metadata_json)
    except _MetadataParseError as e:
        if strict:
            raise MalformedInput(f"Invalid metadata JSON: {e}")
        return {}
    result = {}
    for key, value in data.items():
        field_id = parse_field_id(key)
        if field_id is not None:
            result[field_id] = value
    return result


def build_metadata_json(values: dict[int, Any]) -> str:
    """Serialize a field id → value map to stored metadata text."""
    return json.dumps(
        {str(k): v for k, v in values.items()},
        ensure_ascii=False,
        separators=(",", ":"),
        allow_nan=False,
    )


# -----------------------------------------------------------------------------
# Type validators: each returns an error message, or None if the value is OK
# -----------------------------------------------------------------------------

def _validate_text(field: FieldDefinition, value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return f"Field '{field.name}': expected text value"
    max_length = field.options.max_length if field.options else None
    if max_length is not None and len(value) > max_length:
        return f"Field '{field.name}': text exceeds maximum length of {max_length}"
    return None


def _validate_number(field: FieldDefinition, value: Any) -> Optional[str]:
    if not _is_number(value):
        return f"Field '{field.name}': expected number value"
    options = field.options
    if options is not None:
        if options.min is not None and value < options.min:
            return (f"Field '{field.name}': value {_fmt_number(value)} "
                    f"is below minimum {_fmt_number(options.min)}")
        if options.max is not None and value > options.max:
            return (f"Field '{field.name}': value {_fmt_number(value)} "
                    f"exceeds maximum {_fmt_number(options.max)}")
    return None


def _validate_date(field: FieldDefinition, value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return "Date field: expected string value"
    if _DATE_RE.fullmatch(value):
        try:
            datetime.strptime(value, "%Y-%m-%d")
            return None
        except ValueError:
            pass
    return f"Invalid date format '{value}': expected YYYY-MM-DD"


def _validate_url(field: FieldDefinition, value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return "URL field: expected string value"
    if not value.startswith(("http://", "https://")):
        return f"Invalid URL '{value}': must start with http:// or https://"
    return None


def _validate_boolean(field: FieldDefinition, value: Any) -> Optional[str]:
    if not isinstance(value, bool):
        return "Boolean field: expected true or false"
    return None


def _validate_select(field: FieldDefinition, value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return f"Field '{field.name}': expected string value for select"
    choices = field.options.choices if field.options else None
    if choices is not None and value not in choices:
        return (f"Field '{field.name}': '{value}' is not a valid choice. "
                f"Valid choices: {json.dumps(choices, ensure_ascii=False)}")
    return None


def _validate_relation(field: FieldDefinition, value: Any) -> Optional[str]:
    """Shape check only; whether the target exists is decided at resolve time."""
    if not isinstance(value, dict):
        return f"Field '{field.name}': expected object with entry_id and vault_id"
    entry_id = value.get("entry_id")
    if not _is_integer(entry_id):
        return f"Field '{field.name}': missing or invalid entry_id"
    vault_id = value.get("vault_id")
    if not _is_integer(vault_id):
        return f"Field '{field.name}': missing or invalid vault_id"
    target = field.options.target_vault_id if field.options else None
    if target is not None and vault_id != target:
        return (f"Field '{field.name}': vault_id {vault_id} "
                f"does not match target vault {target}")
    if entry_id <= 0:
        return f"Field '{field.name}': entry_id must be positive"
    if vault_id <= 0:
        return f"Field '{field.name}': vault_id must be positive"
    return None


_VALIDATORS: dict[FieldType, Callable[[FieldDefinition, Any], Optional[str]]] = {
    FieldType.TEXT: _validate_text,
    FieldType.NUMBER: _validate_number,
    FieldType.DATE: _validate_date,
    FieldType.URL: _validate_url,
    FieldType.BOOLEAN: _validate_boolean,
    FieldType.SELECT: _validate_select,
    FieldType.RELATION: _validate_relation,
}


def validate_field_value(field: FieldDefinition, value: Any) -> Optional[str]:
    """Check one non-null value against its field; returns an error or None."""
    return _VALIDATORS[field.field_type](field, value)


def _check_required(
    result: ValidationResult,
    fields: list[FieldDefinition],
    metadata: dict[str, Any],
) -> None:
    for field in fields:
        if field.required and metadata.get(field.key) is None:
            result.add_error(f"Field '{field.name}' is required")


class MetadataValidator:
    """
    Validates and cleans entry metadata against a vault's field definitions.

    Holds no state besides the field provider, so one instance can serve
    any number of concurrent callers.
    """

    def __init__(self, fields: FieldDefinitionProvider):
        self._fields = fields

    def validate_metadata(
        self,
        vault_id: int,
        metadata_json: Optional[str] = None,
    ) -> ValidationResult:
        """
        Validate a metadata blob against the vault's field definitions.

        Checks:
        - The blob is a JSON object (otherwise a single fatal error)
        - Required fields are present and not null
        - Each value matches its field's type and options

        Args:
            vault_id: Vault whose schema applies
            metadata_json: Serialized metadata, or None for no metadata

        Returns:
            ValidationResult; invalid iff it has errors
        """
        fields = self._fields.list_fields(vault_id)
        try:
            metadata = _load_object(metadata_json)
        except _MetadataParseError as e:
            return ValidationResult(errors=[f"Invalid metadata JSON: {e}"])

        result = ValidationResult()
        _check_required(result, fields, metadata)

        by_id = {f.id: f for f in fields}
        for key, value in metadata.items():
            field_id = parse_field_id(key)
            if field_id is None:
                result.add_warning(f"Invalid metadata key '{key}': not a valid field ID")
                continue
            field = by_id.get(field_id)
            if field is None:
                result.add_warning(f"Orphan data detected: field ID {field_id} no longer exists")
                continue
            if value is None:
                continue
            error = validate_field_value(field, value)
            if error is not None:
                result.add_error(error)

        return result

    def validate_required_fields(
        self,
        vault_id: int,
        metadata_json: Optional[str] = None,
    ) -> ValidationResult:
        """
        Check only that required fields have values.

        Used to gate entry creation cheaply. An unparseable blob counts as
        empty, so every required field is reported missing.
        """
        fields = self._fields.list_fields(vault_id)
        try:
            metadata = _load_object(metadata_json)
        except _MetadataParseError:
            metadata = {}
        result = ValidationResult()
        _check_required(result, fields, metadata)
        return result

    def cleanup_orphan_data(self, vault_id: int, metadata_json: str) -> str:
        """
        Drop metadata keys that don't name a current field of the vault.

        Called on entry writes only. Unparseable input is returned
        unchanged. Applying it twice gives the same result as once.

        Returns:
            Cleaned metadata JSON
        """
        valid_ids = {f.id for f in self._fields.list_fields(vault_id)}
        try:
            metadata = _load_object(metadata_json)
        except _MetadataParseError:
            return metadata_json

        cleaned = {
            key: value for key, value in metadata.items()
            if parse_field_id(key) in valid_ids
        }
        removed = len(metadata) - len(cleaned)
        if removed:
            logger.info(
                "Cleaned up %d orphan field(s) from entry metadata in vault %d",
                removed, vault_id,
            )
        return json.dumps(cleaned, ensure_ascii=False, separators=(",", ":"))
