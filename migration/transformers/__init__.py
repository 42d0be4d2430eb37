from migration.transformers.sanitizer import (
    MISSING,
    check_required_fields,
    find_missing_fields,
    is_no_value,
    materialize_columns,
    sanitize_record,
    sanitize_records,
)

__all__ = [
    "MISSING",
    "check_required_fields",
    "find_missing_fields",
    "is_no_value",
    "materialize_columns",
    "sanitize_record",
    "sanitize_records",
]
