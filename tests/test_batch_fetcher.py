"""Chunked History Server downloads: paging, retries, persistence."""

import math

import pytest

from conftest import FakeResponse, make_article_set
from pubmed_harvest.config import FetchSettings
from pubmed_harvest.errors import ConfigError, FetchError
from pubmed_harvest.extract.api_client import ResultSetHandle
from pubmed_harvest.extract.batch_fetcher import (
    BatchFetcher,
    chunk_filename,
    chunk_offsets,
    concatenate_chunks,
)
from pubmed_harvest.transform.splitter import split_records


def _handle(count):
    return ResultSetHandle(query="X[AU]", count=count, query_key="1", webenv="MCID_abc123")


@pytest.mark.parametrize("total, batch_size", [(237, 150), (150, 150), (1, 5000), (10001, 10000), (999, 7)])
def test_chunk_offsets_cover_result_set(total, batch_size):
    offsets = chunk_offsets(total, batch_size)

    assert len(offsets) == math.ceil(total / batch_size)
    assert offsets[0] == 0
    assert all(b - a == batch_size for a, b in zip(offsets, offsets[1:]))
    assert offsets[-1] < total


def test_chunk_filename_is_zero_padded():
    assert chunk_filename("pubmed_batch_", 1, 2, "xml") == "pubmed_batch_01.xml"
    assert chunk_filename("run_", 7, 120, "txt") == "run_007.txt"


def test_fetch_all_pages_through_result_set(client, session):
    session.queue(FakeResponse(make_article_set(150)), FakeResponse(make_article_set(87, start=151)))
    fetcher = BatchFetcher(client, FetchSettings(batch_size=150))

    chunks = fetcher.fetch_all(_handle(237))

    assert [c.offset for c in chunks] == [0, 150]
    assert [c.expected for c in chunks] == [150, 87]
    assert [call["params"]["retstart"] for call in session.calls] == [0, 150]
    assert len(session.calls) == 2

    records = list(split_records(concatenate_chunks(chunks)))
    assert len(records) == 237
    assert "<PMID>1</PMID>" in records[0]
    assert "<PMID>237</PMID>" in records[-1]


def test_single_chunk_when_batch_covers_everything(client, session):
    session.queue(FakeResponse(make_article_set(42)))

    chunks = BatchFetcher(client, FetchSettings(batch_size=5000)).fetch_all(_handle(42))

    assert len(chunks) == 1
    assert len(list(split_records(chunks[0].read()))) == 42


def test_empty_handle_makes_no_requests(client, session):
    chunks = BatchFetcher(client).fetch_all(ResultSetHandle(query="none[TI]", count=0))

    assert chunks == []
    assert session.calls == []


def test_failed_chunk_keeps_earlier_chunks(client, session):
    session.queue(FakeResponse(make_article_set(150)))
    session.queue(*[FakeResponse(status_code=500) for _ in range(3)])
    fetcher = BatchFetcher(client, FetchSettings(batch_size=150, max_retries=2))

    with pytest.raises(FetchError) as exc_info:
        fetcher.fetch_all(_handle(237))

    err = exc_info.value
    assert err.offset == 150
    assert err.attempts == 3
    assert len(session.calls) == 4
    assert len(err.chunks) == 1
    assert len(list(split_records(err.chunks[0].read()))) == 150


def test_client_error_fails_without_retry(client, session):
    session.queue(FakeResponse(status_code=400))

    with pytest.raises(FetchError) as exc_info:
        BatchFetcher(client, FetchSettings(batch_size=10)).fetch_all(_handle(5))

    assert exc_info.value.offset == 0
    assert exc_info.value.attempts == 1
    assert exc_info.value.chunks == []
    assert len(session.calls) == 1


@pytest.mark.parametrize("batch_size", [0, -5, 10001, 2.5, True])
def test_invalid_batch_size_rejected_before_any_request(batch_size):
    with pytest.raises(ConfigError):
        FetchSettings(batch_size=batch_size)


def test_unknown_format_rejected():
    with pytest.raises(ConfigError):
        FetchSettings(fmt="json")


def test_delay_between_chunks_only(client, session, sleeps):
    session.queue(*[FakeResponse(make_article_set(2)) for _ in range(3)])

    BatchFetcher(client, FetchSettings(batch_size=2, delay=2.5)).fetch_all(_handle(6))

    assert sleeps.count(2.5) == 2


def test_chunks_written_to_destination(client, session, tmp_path):
    session.queue(FakeResponse(make_article_set(2)), FakeResponse(make_article_set(1, start=3)))
    dest = tmp_path / "raw"
    settings = FetchSettings(batch_size=2, dest_dir=dest, file_prefix="subiculum_")

    chunks = BatchFetcher(client, settings).fetch_all(_handle(3))

    assert sorted(p.name for p in dest.iterdir()) == ["subiculum_01.xml", "subiculum_02.xml"]
    assert chunks[0].text is None
    assert chunks[0].path == dest / "subiculum_01.xml"
    assert "<PMID>3</PMID>" in chunks[1].read()


def test_text_format_uses_txt_extension(client, session, tmp_path):
    session.queue(FakeResponse("PMID- 1\n\nPMID- 2\n"))
    settings = FetchSettings(batch_size=10, fmt="medline", dest_dir=tmp_path)

    chunks = BatchFetcher(client, settings).fetch_all(_handle(2))

    assert chunks[0].path.name == "pubmed_batch_01.txt"
    assert session.calls[0]["params"]["rettype"] == "medline"


def test_concatenated_files_form_one_document(client, session, tmp_path):
    session.queue(*[FakeResponse(make_article_set(2, start=n)) for n in (1, 3, 5)])
    settings = FetchSettings(batch_size=2, dest_dir=tmp_path)

    chunks = BatchFetcher(client, settings).fetch_all(_handle(6))
    merged = concatenate_chunks(chunks)

    assert merged.count("<PubmedArticleSet>") == 1
    assert [f"<PMID>{n}</PMID>" in record for n, record in zip(range(1, 7), split_records(merged))] == [True] * 6


def test_concatenated_text_chunks_are_joined(client, session):
    session.queue(FakeResponse("PMID- 1\n\n"), FakeResponse("PMID- 2\n"))

    chunks = BatchFetcher(client, FetchSettings(batch_size=1, fmt="medline")).fetch_all(_handle(2))

    assert concatenate_chunks(chunks) == "PMID- 1\n\nPMID- 2\n"


def test_truncated_chunk_is_refetched(client, session):
    full = make_article_set(3)
    session.queue(FakeResponse(full[: len(full) - 120]), FakeResponse(full))

    chunks = BatchFetcher(client, FetchSettings(batch_size=3)).fetch_all(_handle(3))

    assert len(session.calls) == 2
    assert chunks[0].read() == full
    assert len(list(split_records(chunks[0].read()))) == 3
