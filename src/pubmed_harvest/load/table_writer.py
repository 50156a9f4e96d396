"""Build the per-author result table from downloaded batches."""

import logging
import os
from collections import Counter
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Union

import pandas as pd

from pubmed_harvest.config import validate_included_authors, validate_max_chars
from pubmed_harvest.errors import ConfigError
from pubmed_harvest.extract.batch_fetcher import RawChunk
from pubmed_harvest.transform.fields import RECORD_SCHEMA, FieldSpec
from pubmed_harvest.transform.flattener import AuthorRow, columns_for, flatten_record
from pubmed_harvest.transform.splitter import split_records

logger = logging.getLogger(__name__)

ChunkSource = Union[RawChunk, str, os.PathLike]


def select_authors(rows: List[AuthorRow], included_authors: str = "all") -> List[AuthorRow]:
    if included_authors == "first":
        return rows[:1]
    if included_authors == "last":
        return rows[-1:]
    return rows


def aggregate(
    chunks: Iterable[ChunkSource],
    schema: Sequence[FieldSpec] = RECORD_SCHEMA,
    included_authors: str = "all",
    max_chars: Optional[int] = None,
    autofill: bool = False,
    dest_file: Optional[Union[str, Path]] = None
) -> pd.DataFrame:
    """
    Flatten every record of every chunk into one DataFrame.

    Rows keep chunk order, then record order, then author order. Chunks may
    be RawChunk objects, raw XML strings, or paths (str or Path) to saved
    batch files; a str not starting with "<" is read as a path.
    When dest_file is set the table is also written there as CSV; a failed
    write is logged and the table is returned anyway.
    """
    validate_included_authors(included_authors)
    max_chars = validate_max_chars(max_chars)
    columns = columns_for(schema)

    rows: List[AuthorRow] = []
    empty_fields = Counter()
    n_records = 0

    for chunk in chunks:
        chunk_records = 0
        for fragment in split_records(_chunk_text(chunk)):
            chunk_records += 1
            record_rows = flatten_record(fragment, schema=schema, max_chars=max_chars, autofill=autofill)
            n_records += 1
            for spec in schema:
                if not record_rows[0][spec.name]:
                    empty_fields[spec.name] += 1
            rows.extend(select_authors(record_rows, included_authors))
        if chunk_records == 0:
            logger.warning(f"No records found in batch: {_describe(chunk)}")

    logger.info(f"Flattened {n_records} records into {len(rows)} rows")
    if empty_fields:
        logger.info(f"Records with empty fields: {dict(empty_fields)}")

    table = pd.DataFrame(rows, columns=columns)

    if dest_file is not None:
        write_table(table, dest_file)

    return table


def write_table(table: pd.DataFrame, dest_file: Union[str, Path]) -> Optional[Path]:
    """Write the table as CSV, overwriting dest_file. Returns None if the write failed."""
    path = Path(dest_file).expanduser()
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        table.to_csv(path, index=False)
    except OSError as e:
        logger.error(f"Failed to write table to {path}: {e}")
        return None

    logger.info(f"Wrote {len(table)} rows to {path}")
    return path


def _describe(chunk: ChunkSource) -> str:
    if isinstance(chunk, RawChunk):
        return f"#{chunk.index} (offset {chunk.offset})"
    if _is_path(chunk):
        return str(chunk)
    return f"{chunk[:60]!r}..."


def _is_path(chunk: ChunkSource) -> bool:
    if isinstance(chunk, os.PathLike):
        return True
    stripped = chunk.lstrip()
    return bool(stripped) and not stripped.startswith("<")


def _chunk_text(chunk: ChunkSource) -> str:
    if isinstance(chunk, RawChunk):
        if chunk.fmt != "xml":
            raise ConfigError(f"Only XML batches can be flattened, got format '{chunk.fmt}'")
        return chunk.read()
    if _is_path(chunk):
        with open(chunk, "r", encoding="utf-8") as f:
            return f.read()
    return chunk
