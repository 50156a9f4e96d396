"""
Load module - tabular output

- aggregate: flatten downloaded batches into one per-author DataFrame
- write_table: CSV serialization of the result table
"""

from .table_writer import aggregate, select_authors, write_table

__all__ = [
    "aggregate",
    "select_authors",
    "write_table",
]
