from .fields import RECORD_SCHEMA, FieldSpec, extract_field, trim_address
from .flattener import AUTHOR_COLUMNS, autofill_addresses, columns_for, flatten_record, parse_authors
from .splitter import split_records

__all__ = [
    "RECORD_SCHEMA",
    "FieldSpec",
    "extract_field",
    "trim_address",
    "AUTHOR_COLUMNS",
    "autofill_addresses",
    "columns_for",
    "flatten_record",
    "parse_authors",
    "split_records",
]
