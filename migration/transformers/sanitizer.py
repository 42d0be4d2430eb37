"""
Normalize missing values in target records before they reach the store
"""

from typing import Any, Dict, Iterable, List, Optional, Sequence
import math
import logging

logger = logging.getLogger(__name__)


class _Missing:
    """Marker for a field the source did not supply at all"""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False

    def __reduce__(self):
        return (_Missing, ())


MISSING = _Missing()


def is_no_value(value: Any) -> bool:
    """
    True for every representation of "no value" that must be stored as NULL.

    Covers ``None``, the ``MISSING`` marker and float NaN (what pandas and
    some JSON producers emit for blanks).
    """
    if value is None or value is MISSING:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return False


def sanitize_record(record: Dict[str, Any]) -> Dict[str, Any]:
    """
    Return a copy of ``record`` with every no-value field set to ``None``.

    Field names and order are preserved exactly; nothing is dropped.
    """
    return {
        key: None if is_no_value(value) else value
        for key, value in record.items()
    }


def find_missing_fields(record: Dict[str, Any], context: str = "") -> List[str]:
    """List fields holding no value, logging them for diagnostics"""
    missing_fields = [
        key for key, value in record.items()
        if value is MISSING or (isinstance(value, float) and math.isnan(value))
    ]

    if missing_fields:
        logger.warning(f"Found unset fields in {context or 'record'}: {missing_fields}")

    return missing_fields


def check_required_fields(
    record: Dict[str, Any],
    required_fields: Sequence[str],
    context: str = ""
) -> List[str]:
    """
    Report (never reject) required fields that are null or empty.

    Returns:
        Names of required fields that are absent, null or ``""``
    """
    missing = [
        field for field in required_fields
        if is_no_value(record.get(field, MISSING)) or record.get(field) == ""
    ]

    if missing:
        logger.warning(f"{context or 'Record'} missing required fields: {missing}")

    return missing


def sanitize_records(
    records: Iterable[Dict[str, Any]],
    required_fields: Optional[Sequence[str]] = None
) -> List[Dict[str, Any]]:
    """Sanitize a batch of records, reporting unset and required fields"""
    sanitized = []

    for index, record in enumerate(records):
        find_missing_fields(record, f"record {index}")
        clean = sanitize_record(record)

        if required_fields:
            check_required_fields(clean, required_fields, f"Record {index}")

        sanitized.append(clean)

    return sanitized


def materialize_columns(
    records: Iterable[Dict[str, Any]],
    columns: Sequence[str]
) -> List[Dict[str, Any]]:
    """
    Give every record all of ``columns``, in that order, ahead of any other keys.

    Absent columns become explicit ``None`` so all records in a load share
    one column set. Extra keys are kept after the declared columns.
    """
    conformed = []
    for record in records:
        row = {col: record.get(col) for col in columns}
        for key, value in record.items():
            if key not in row:
                row[key] = value
        conformed.append(sanitize_record(row))
    return conformed
