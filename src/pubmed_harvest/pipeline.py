#!/usr/bin/env python3
"""
Harvest Pipeline Orchestrator

Searches PubMed, downloads the result set in batches, and flattens the
records into a per-author table. Configuration comes from settings.yaml.
"""

import logging
import sys
from pathlib import Path
from typing import Optional

import pandas as pd

from pubmed_harvest.config import ConfigManager
from pubmed_harvest.errors import ConfigError, FetchError
from pubmed_harvest.extract.api_client import PubMedAPIClient
from pubmed_harvest.extract.batch_fetcher import BatchFetcher
from pubmed_harvest.load.table_writer import aggregate

logger = logging.getLogger(__name__)


def setup_logging(log_dir: str = "logs", level: int = logging.INFO) -> None:
    Path(log_dir).mkdir(exist_ok=True)
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(Path(log_dir) / 'pipeline.log'),
            logging.StreamHandler(sys.stdout)
        ]
    )


class Pipeline:
    """
    Orchestrates search -> batch download -> author table.

    Handles:
    - Fail-fast validation of all settings before the first request
    - Batching via the History Server (one EFetch per chunk)
    - Partial results: chunks fetched before a FetchError are still flattened
    """

    def __init__(self, config_path: str = "settings.yaml", query: Optional[str] = None):
        self.config = ConfigManager(config_path)
        self.query = query or self.config.search_query
        if not self.query or not self.query.strip():
            raise ConfigError("No search query configured (search.query)")

        self.fetch_settings = self.config.fetch_settings()
        self.extract_settings = self.config.extract_settings()
        self.api_client: PubMedAPIClient = None

    def run(self) -> pd.DataFrame:
        logger.info("Starting harvest pipeline")
        logger.info(f"Search query: {self.query}")

        self.api_client = PubMedAPIClient(
            email=self.config.pubmed_email,
            api_key=self.config.pubmed_api_key,
            tool=self.config.pubmed_tool,
            rate_limit=self.config.rate_limit,
            max_retries=self.config.max_retries,
            backoff_base=self.config.retry_backoff_base,
            backoff_max=self.config.retry_backoff_max,
            timeout=self.config.timeout
        )

        try:
            handle = self.api_client.search(self.query)
            logger.info(f"Total records found: {handle.count}")
            if handle.webenv:
                logger.info(f"WebEnv: {handle.webenv[:20]}...")
            logger.info(f"Query key: {handle.query_key}")

            fetcher = BatchFetcher(self.api_client, self.fetch_settings)
            try:
                chunks = fetcher.fetch_all(handle)
            except FetchError as e:
                logger.error(f"Fetch aborted at offset {e.offset}; keeping {len(e.chunks)} completed batch(es)")
                if self.fetch_settings.fmt == "xml" and e.chunks:
                    self._build_table(e.chunks)
                raise

            if self.fetch_settings.fmt != "xml":
                logger.info(f"Format '{self.fetch_settings.fmt}' is not tabulated; batches left as downloaded")
                return pd.DataFrame()

            table = self._build_table(chunks)
            logger.info("\n=== Pipeline Complete ===")
            logger.info(f"Total rows: {len(table)}")
            return table

        finally:
            self.api_client.close()

    def _build_table(self, chunks) -> pd.DataFrame:
        settings = self.extract_settings
        return aggregate(
            chunks,
            included_authors=settings.included_authors,
            max_chars=settings.max_chars,
            autofill=settings.autofill,
            dest_file=settings.output_file
        )


def main(config_path: str = "settings.yaml") -> None:
    setup_logging()
    pipeline = Pipeline(config_path)
    pipeline.run()


if __name__ == "__main__":
    main(*sys.argv[1:2])
