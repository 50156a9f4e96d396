"""
pubmed_harvest - bulk PubMed retrieval and per-author tables

- extract: ESearch/EFetch client and chunked History Server downloads
- transform: record splitting, field extraction, author flattening
- load: result table assembly and CSV output
"""

from .errors import (
    ConfigError,
    ExtractionWarning,
    FetchError,
    MalformedResponseError,
    PubMedHarvestError,
    RemoteError,
)
from .extract import BatchFetcher, PubMedAPIClient, RawChunk, ResultSetHandle
from .load import aggregate
from .transform import extract_field, flatten_record, split_records

__all__ = [
    "ConfigError",
    "ExtractionWarning",
    "FetchError",
    "MalformedResponseError",
    "PubMedHarvestError",
    "RemoteError",
    "BatchFetcher",
    "PubMedAPIClient",
    "RawChunk",
    "ResultSetHandle",
    "aggregate",
    "extract_field",
    "flatten_record",
    "split_records",
]

__version__ = "0.1.0"
