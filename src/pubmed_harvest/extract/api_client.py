"""PubMed API client with ESearch/EFetch and inline rate limiting."""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

import requests
from lxml import etree

from pubmed_harvest.config import FORMATS, validate_format
from pubmed_harvest.errors import MalformedResponseError, RemoteError

logger = logging.getLogger(__name__)

_STRICT_PARSER = etree.XMLParser(huge_tree=True, resolve_entities=False, no_network=True)


@dataclass(frozen=True)
class ResultSetHandle:
    """
    A query result set stored on the NCBI History Server.

    The server forgets the set after a while; expiry only shows up as an
    error on the next EFetch.
    """

    query: str
    count: int
    query_key: Optional[str] = None
    webenv: Optional[str] = None
    retrieved_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_empty(self) -> bool:
        return self.count == 0


class PubMedAPIClient:
    """PubMed E-utilities API client with inline rate limiting."""

    BASE_URL = "https://eutils.ncbi.nlm.nih.gov/entrez/eutils"

    def __init__(
        self,
        email: str,
        api_key: Optional[str] = None,
        tool: str = "pubmed-harvest",
        rate_limit: int = 3,
        max_retries: int = 3,
        backoff_base: int = 2,
        backoff_max: int = 60,
        timeout: int = 60
    ):
        self.email = email
        self.api_key = api_key
        self.tool = tool

        # Inline rate limiting
        self.rate_limit = rate_limit
        self.min_interval = 1.0 / rate_limit
        self.last_request_time = 0.0

        self.session = requests.Session()
        self.base_url = self.BASE_URL
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.timeout = timeout
        self.last_attempts = 0
        self.logger = logging.getLogger(__name__)

        self.session.headers.update({
            "User-Agent": f"{tool}/0.1.0 (Python; mailto:{email})"
        })

    def search(self, query: str) -> ResultSetHandle:
        """
        Run ESearch with usehistory=y and return the History Server handle.

        A query matching nothing returns an empty handle (count == 0) rather
        than raising. The request is attempted once.
        """
        url = f"{self.base_url}/esearch.fcgi"
        params = self._build_params(
            db="pubmed",
            term=query,
            usehistory="y",
            retmode="json",
            retmax=0
        )

        self.logger.info(f"Executing ESearch: {query}")
        try:
            response = self._get(url, params, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise RemoteError(f"ESearch request failed: {e}") from e

        try:
            data = response.json()
        except ValueError as e:
            raise MalformedResponseError(f"ESearch returned a non-JSON body: {response.text[:200]!r}") from e

        if not isinstance(data, dict) or "esearchresult" not in data:
            raise MalformedResponseError(f"Malformed ESearch response: {data}")

        result_data = data["esearchresult"]
        if "ERROR" in result_data:
            raise RemoteError(f"ESearch error: {result_data['ERROR']}")

        try:
            count = int(result_data.get("count", 0))
        except (TypeError, ValueError) as e:
            raise MalformedResponseError(f"ESearch count is not a number: {result_data.get('count')!r}") from e

        self.logger.info(f"ESearch found {count} total results")

        webenv = result_data.get("webenv")
        query_key = result_data.get("querykey")
        if count > 0 and not (webenv and query_key):
            raise RemoteError("ESearch response is missing WebEnv/QueryKey for a non-empty result set")

        return ResultSetHandle(query=query, count=count, query_key=query_key, webenv=webenv)

    def search_by_title(self, title: str, field_tag: str = "[Title]") -> ResultSetHandle:
        """Look up an article by its full title, retrying unquoted if the exact phrase misses."""
        title = " ".join(title.split()).rstrip(".")
        handle = self.search(f'"{title}"{field_tag}')
        if handle.is_empty:
            self.logger.info("Exact title match returned nothing, retrying unquoted")
            handle = self.search(f"{title}{field_tag}")
        return handle

    def fetch_batch(
        self,
        handle: ResultSetHandle,
        retstart: int,
        retmax: int,
        fmt: str = "xml",
        max_retries: Optional[int] = None
    ) -> str:
        """
        Fetch one page of the result set.

        Transient failures are retried; once retries run out the last error
        is raised (a requests exception or MalformedResponseError).
        The number of requests made is left on `last_attempts`.
        """
        validate_format(fmt)
        retmode, rettype, _ = FORMATS[fmt]
        url = f"{self.base_url}/efetch.fcgi"
        params = self._build_params(
            db="pubmed",
            query_key=handle.query_key,
            WebEnv=handle.webenv,
            retstart=retstart,
            retmax=retmax,
            retmode=retmode
        )
        if rettype:
            params["rettype"] = rettype

        self.logger.info(f"Fetching batch: start={retstart}, max={retmax}, format={fmt}")
        response = self._retry_request(
            url,
            params,
            timeout=max(self.timeout, 120),
            validate=_check_efetch_payload(fmt, expected=min(retmax, handle.count - retstart)),
            max_retries=max_retries
        )
        return response.text

    def _wait_if_needed(self) -> None:
        """Rate limiting: block until min_interval has elapsed."""
        elapsed = time.time() - self.last_request_time
        if elapsed < self.min_interval:
            time.sleep(self.min_interval - elapsed)
        self.last_request_time = time.time()

    def _build_params(self, **kwargs) -> dict:
        params = {"email": self.email, "tool": self.tool, **kwargs}
        if self.api_key:
            params["api_key"] = self.api_key
        return params

    def _get(self, url: str, params: dict, timeout: int) -> requests.Response:
        self._wait_if_needed()  # Rate limit before request
        response = self.session.get(url, params=params, timeout=timeout)
        response.raise_for_status()
        return response

    def _retry_request(
        self,
        url: str,
        params: dict,
        timeout: int = 60,
        validate: Optional[Callable[[requests.Response], None]] = None,
        max_retries: Optional[int] = None
    ) -> requests.Response:
        """Retry with exponential backoff. Handle 429 (rate limit), 5xx and unusable bodies."""
        retries = self.max_retries if max_retries is None else max_retries
        attempts = retries + 1

        for attempt in range(attempts):
            last_attempt = attempt == attempts - 1
            self.last_attempts = attempt + 1
            try:
                response = self._get(url, params, timeout)
                if validate is not None:
                    validate(response)
                return response

            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
                if last_attempt:
                    self.logger.error(f"Max retries exceeded: {e}")
                    raise
                wait = self._calculate_backoff(attempt)
                self.logger.warning(
                    f"Request failed: {e} (attempt {attempt + 1}/{attempts}). "
                    f"Waiting {wait}s before retry."
                )
                time.sleep(wait)

            except MalformedResponseError as e:
                if last_attempt:
                    self.logger.error(f"Max retries exceeded: {e}")
                    raise
                wait = self._calculate_backoff(attempt)
                self.logger.warning(f"{e} (attempt {attempt + 1}/{attempts}). Waiting {wait}s before retry.")
                time.sleep(wait)

            except requests.exceptions.HTTPError as e:
                if e.response.status_code == 429:  # Rate limit
                    if last_attempt:
                        raise
                    retry_after = _retry_after_seconds(e.response, default=self._calculate_backoff(attempt))
                    self.logger.warning(
                        f"Rate limited by server (HTTP 429). Waiting {retry_after}s."
                    )
                    time.sleep(retry_after)

                elif 500 <= e.response.status_code < 600:  # Server error - retry
                    if last_attempt:
                        raise
                    wait = self._calculate_backoff(attempt)
                    self.logger.warning(f"Server error {e.response.status_code}, waiting {wait}s")
                    time.sleep(wait)

                else:  # Client error (4xx except 429) - don't retry
                    raise

        raise requests.exceptions.RequestException(f"Max retries ({retries}) exceeded for {url}")

    def _calculate_backoff(self, attempt: int) -> float:
        """Exponential backoff: min(base^attempt, max)"""
        return min(self.backoff_base ** attempt, self.backoff_max)

    def close(self) -> None:
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __repr__(self) -> str:
        return f"PubMedAPIClient(email={self.email}, rate={self.rate_limit} req/s)"


def _retry_after_seconds(response: requests.Response, default: float) -> float:
    try:
        return float(response.headers.get("Retry-After", default))
    except (TypeError, ValueError):
        return default


def _check_efetch_payload(fmt: str, expected: Optional[int] = None) -> Callable[[requests.Response], None]:
    """
    Build a validator that rejects empty, error or unparseable bodies.

    XML bodies are parsed strictly so a truncated download is retried
    instead of being half-read later.
    """

    def validate(response: requests.Response) -> None:
        text = response.text
        if not text or not text.strip():
            raise MalformedResponseError("EFetch returned an empty body")
        if "<ERROR>" in text:
            raise MalformedResponseError(f"EFetch returned an error payload: {text.strip()[:200]}")
        if fmt != "xml":
            return

        try:
            root = etree.fromstring(text.encode("utf-8"), parser=_STRICT_PARSER)
        except etree.XMLSyntaxError as e:
            raise MalformedResponseError(f"EFetch returned invalid XML: {e}") from e
        if root.tag != "PubmedArticleSet":
            raise MalformedResponseError(f"EFetch XML root is <{root.tag}>, expected <PubmedArticleSet>")

        n_records = len(root.findall("PubmedArticle")) + len(root.findall("PubmedBookArticle"))
        if expected is not None and n_records != expected:
            logger.warning(f"EFetch returned {n_records} records, expected {expected}")

    return validate
