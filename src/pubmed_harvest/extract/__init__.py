"""
Extract module - PubMed API interaction

Components for extracting data from PubMed E-utilities API:
- PubMedAPIClient: ESearch and EFetch operations with inline rate limiting
- BatchFetcher: chunked download of a History Server result set
"""

from .api_client import PubMedAPIClient, ResultSetHandle
from .batch_fetcher import BatchFetcher, RawChunk, chunk_offsets, concatenate_chunks

__all__ = [
    "PubMedAPIClient",
    "ResultSetHandle",
    "BatchFetcher",
    "RawChunk",
    "chunk_offsets",
    "concatenate_chunks",
]
