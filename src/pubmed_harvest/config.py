"""Configuration management for loading settings from YAML."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import yaml

from pubmed_harvest.errors import ConfigError

# EFetch refuses more than 10,000 records per request.
MAX_BATCH_SIZE = 10000
DEFAULT_BATCH_SIZE = 5000
DEFAULT_FILE_PREFIX = "pubmed_batch_"

# format name -> (retmode, rettype, file extension)
FORMATS = {
    "xml": ("xml", None, "xml"),
    "medline": ("text", "medline", "txt"),
    "abstract": ("text", "abstract", "txt"),
    "uilist": ("text", "uilist", "txt"),
}

INCLUDED_AUTHORS = ("first", "last", "all")


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_format(fmt: str) -> str:
    if fmt not in FORMATS:
        raise ConfigError(f"Unknown format '{fmt}'. Expected one of: {', '.join(FORMATS)}")
    return fmt


def validate_batch_size(batch_size: Any) -> int:
    if not _is_int(batch_size) or batch_size < 1:
        raise ConfigError(f"batch_size must be a positive integer, got {batch_size!r}")
    if batch_size > MAX_BATCH_SIZE:
        raise ConfigError(
            f"batch_size {batch_size} exceeds the EFetch limit of {MAX_BATCH_SIZE} records per request"
        )
    return batch_size


def validate_included_authors(included_authors: str) -> str:
    if included_authors not in INCLUDED_AUTHORS:
        raise ConfigError(
            f"Unknown included_authors '{included_authors}'. "
            f"Expected one of: {', '.join(INCLUDED_AUTHORS)}"
        )
    return included_authors


def validate_max_chars(max_chars: Any) -> Optional[int]:
    """Normalize max_chars: None or 0 disables truncation."""
    if max_chars is None:
        return None
    if not _is_int(max_chars) or max_chars < 0:
        raise ConfigError(f"max_chars must be a non-negative integer, got {max_chars!r}")
    return max_chars or None


@dataclass(frozen=True)
class FetchSettings:
    """How result sets are paged through EFetch and where chunks land."""

    batch_size: int = DEFAULT_BATCH_SIZE
    fmt: str = "xml"
    dest_dir: Optional[Path] = None
    file_prefix: str = DEFAULT_FILE_PREFIX
    delay: float = 0.0
    max_retries: int = 3

    def __post_init__(self):
        validate_batch_size(self.batch_size)
        validate_format(self.fmt)
        if not _is_int(self.max_retries) or self.max_retries < 0:
            raise ConfigError(f"max_retries must be a non-negative integer, got {self.max_retries!r}")
        if not isinstance(self.delay, (int, float)) or self.delay < 0:
            raise ConfigError(f"delay must be >= 0 seconds, got {self.delay!r}")
        if self.dest_dir is not None:
            object.__setattr__(self, "dest_dir", Path(self.dest_dir))

    @property
    def extension(self) -> str:
        return FORMATS[self.fmt][2]


@dataclass(frozen=True)
class ExtractSettings:
    """How downloaded XML is flattened into the author table."""

    included_authors: str = "all"
    max_chars: Optional[int] = None
    autofill: bool = False
    output_file: Optional[Path] = None

    def __post_init__(self):
        validate_included_authors(self.included_authors)
        object.__setattr__(self, "max_chars", validate_max_chars(self.max_chars))
        if self.output_file is not None:
            object.__setattr__(self, "output_file", Path(self.output_file))


class ConfigManager:

    def __init__(self, config_path: str = "settings.yaml"):
        self.config_path = Path(config_path)
        self.config = {}
        self.load()
        self.validate()

    def load(self) -> None:
        if not self.config_path.exists():
            raise FileNotFoundError(
                f"Configuration file not found: {self.config_path}\n"
                f"Please copy settings-template.yaml to settings.yaml and configure your values."
            )

        with open(self.config_path, 'r') as f:
            self.config = yaml.safe_load(f)

        if not self.config:
            raise ConfigError(f"Configuration file is empty: {self.config_path}")

        # Fall back to the environment when no key is configured
        if not self.get("pubmed.api_key"):
            self.set("pubmed.api_key", os.environ.get("NCBI_API_KEY") or None)

    def validate(self) -> None:
        required_fields = {
            "pubmed.email": "NCBI requires email for API identification",
            "pubmed.tool": "Tool name for API identification"
        }

        for field, description in required_fields.items():
            value = self.get(field)
            if not value or value == "your.email@example.com":
                raise ConfigError(
                    f"Required field '{field}' is missing or invalid.\n"
                    f"Description: {description}\n"
                    f"Please update {self.config_path}"
                )

        # Building the settings objects runs their validation
        self.fetch_settings()
        self.extract_settings()

    def get(self, key_path: str, default: Any = None) -> Any:
        keys = key_path.split('.')
        value = self.config

        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default

        return value

    def set(self, key_path: str, value: Any) -> None:
        keys = key_path.split('.')
        config = self.config
        for key in keys[:-1]:
            if key not in config:
                config[key] = {}
            config = config[key]
        config[keys[-1]] = value

    def fetch_settings(self) -> FetchSettings:
        return FetchSettings(
            batch_size=self.get("fetch.batch_size", DEFAULT_BATCH_SIZE),
            fmt=self.get("fetch.format", "xml"),
            dest_dir=self.get("fetch.dest_dir"),
            file_prefix=self.get("fetch.file_prefix", DEFAULT_FILE_PREFIX),
            delay=self.get("fetch.delay", 0.0),
            max_retries=self.max_retries,
        )

    def extract_settings(self) -> ExtractSettings:
        return ExtractSettings(
            included_authors=self.get("extract.included_authors", "all"),
            max_chars=self.get("extract.max_chars"),
            autofill=bool(self.get("extract.autofill", False)),
            output_file=self.get("extract.output_file"),
        )

    @property
    def pubmed_email(self) -> str:
        return self.get("pubmed.email")

    @property
    def pubmed_api_key(self) -> Optional[str]:
        return self.get("pubmed.api_key")

    @property
    def pubmed_tool(self) -> str:
        return self.get("pubmed.tool", "pubmed-harvest")

    @property
    def rate_limit(self) -> int:
        """Returns 10 req/s if API key provided, else 3 req/s."""
        if self.pubmed_api_key:
            return self.get("pubmed.rate_limit_with_key", 10)
        else:
            return self.get("pubmed.rate_limit_without_key", 3)

    @property
    def timeout(self) -> int:
        return self.get("pubmed.timeout", 60)

    @property
    def search_query(self) -> Optional[str]:
        return self.get("search.query")

    @property
    def max_retries(self) -> int:
        return self.get("pubmed.max_retries", 3)

    @property
    def retry_backoff_base(self) -> int:
        return self.get("pubmed.retry_backoff_base", 2)

    @property
    def retry_backoff_max(self) -> int:
        return self.get("pubmed.retry_backoff_max", 60)
