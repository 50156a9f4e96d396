"""Exception and warning types raised across the harvest pipeline."""

from typing import List, Optional


class PubMedHarvestError(Exception):
    """Base class for all pubmed_harvest errors."""


class ConfigError(PubMedHarvestError, ValueError):
    """Invalid settings. Raised before any network call is made."""


class RemoteError(PubMedHarvestError):
    """The E-utilities service failed or answered with something unusable."""


class MalformedResponseError(RemoteError):
    """Empty body, NCBI error payload, or a body that cannot be decoded."""


class FetchError(PubMedHarvestError):
    """
    A chunk could not be fetched after exhausting retries.

    Chunks fetched before the failure are kept on `chunks` so callers can
    still process the partial result set.
    """

    def __init__(self, offset: int, attempts: int, chunks: Optional[List] = None, reason: str = ""):
        self.offset = offset
        self.attempts = attempts
        self.chunks = list(chunks or [])
        message = f"Failed to fetch chunk at offset {offset} after {attempts} attempt(s)"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class ExtractionWarning(UserWarning):
    """A record fragment could not be parsed; its row is filled with empty fields."""
