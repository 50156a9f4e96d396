"""Paged EFetch download of a History Server result set."""

import logging
import math
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import requests
from lxml import etree

from pubmed_harvest.config import FetchSettings
from pubmed_harvest.errors import FetchError, RemoteError
from pubmed_harvest.extract.api_client import PubMedAPIClient, ResultSetHandle
from pubmed_harvest.transform.fields import parse_markup

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RawChunk:
    """
    One EFetch response.

    Persisted chunks keep only their `path`; in-memory chunks keep `text`.
    """

    index: int
    offset: int
    fmt: str
    expected: int
    text: Optional[str] = None
    path: Optional[Path] = None

    def read(self) -> str:
        if self.text is not None:
            return self.text
        with open(self.path, "r", encoding="utf-8") as f:
            return f.read()


def chunk_offsets(total_count: int, batch_size: int) -> List[int]:
    """Start offsets for ceil(total_count / batch_size) requests."""
    return [i * batch_size for i in range(math.ceil(total_count / batch_size))]


def chunk_filename(prefix: str, index: int, n_chunks: int, extension: str) -> str:
    width = max(2, len(str(n_chunks)))
    return f"{prefix}{index:0{width}d}.{extension}"


class BatchFetcher:
    """
    Downloads every record of a result set, one EFetch request per chunk.

    Chunks are fetched strictly in order. A chunk that still fails after
    `max_retries` retries aborts the run with FetchError; nothing is skipped.
    """

    def __init__(self, client: PubMedAPIClient, settings: Optional[FetchSettings] = None):
        self.client = client
        self.settings = settings or FetchSettings()

    def fetch_all(self, handle: ResultSetHandle) -> List[RawChunk]:
        settings = self.settings
        if handle.is_empty:
            logger.info(f"Nothing to fetch for query: {handle.query}")
            return []

        offsets = chunk_offsets(handle.count, settings.batch_size)
        n_chunks = len(offsets)
        logger.info(
            f"Fetching {handle.count} records in {n_chunks} batch(es) of up to {settings.batch_size}"
        )

        if settings.dest_dir is not None:
            settings.dest_dir.mkdir(parents=True, exist_ok=True)

        chunks: List[RawChunk] = []
        for index, offset in enumerate(offsets, start=1):
            if index > 1 and settings.delay:
                time.sleep(settings.delay)

            logger.info(
                f"--- Batch {index}/{n_chunks} (records {offset + 1}-"
                f"{min(offset + settings.batch_size, handle.count)}) ---"
            )
            try:
                text = self.client.fetch_batch(
                    handle,
                    retstart=offset,
                    retmax=settings.batch_size,
                    fmt=settings.fmt,
                    max_retries=settings.max_retries
                )
            except (requests.exceptions.RequestException, RemoteError) as e:
                logger.error(f"Giving up on batch {index}/{n_chunks} at offset {offset}: {e}")
                raise FetchError(
                    offset=offset,
                    attempts=self.client.last_attempts,
                    chunks=chunks,
                    reason=str(e)
                ) from e

            expected = min(settings.batch_size, handle.count - offset)
            chunks.append(self._store(text, index, offset, expected, n_chunks))

        logger.info(f"Fetched {len(chunks)} batch(es)")
        return chunks

    def _store(self, text: str, index: int, offset: int, expected: int, n_chunks: int) -> RawChunk:
        settings = self.settings
        if settings.dest_dir is None:
            return RawChunk(index=index, offset=offset, fmt=settings.fmt, expected=expected, text=text)

        path = settings.dest_dir / chunk_filename(settings.file_prefix, index, n_chunks, settings.extension)
        with open(path, "w", encoding="utf-8") as f:
            f.write(text)
        logger.info(f"Wrote {path}")
        return RawChunk(index=index, offset=offset, fmt=settings.fmt, expected=expected, path=path)


def concatenate_chunks(chunks: List[RawChunk]) -> str:
    """
    Payloads joined in fetch order.

    XML chunks are merged into a single <PubmedArticleSet> so the result is
    one well-formed document; text formats are joined as-is.
    """
    if not chunks or any(chunk.fmt != "xml" for chunk in chunks):
        return "".join(chunk.read() for chunk in chunks)

    merged = etree.Element("PubmedArticleSet")
    for chunk in chunks:
        root = parse_markup(chunk.read())
        if root is None:
            logger.warning(f"Batch {chunk.index} (offset {chunk.offset}) has no parseable XML")
            continue
        merged.extend(list(root))
    return etree.tostring(merged, encoding="unicode")
