"""Tag-scoped field extraction from PubMed record markup."""

import logging
import re
from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple, Union

from lxml import etree

from pubmed_harvest.config import validate_max_chars
from pubmed_harvest.errors import ConfigError

logger = logging.getLogger(__name__)

Markup = Union[str, bytes, etree._Element]

OCCURRENCES = ("first", "all")

_PARSER = etree.XMLParser(recover=True, huge_tree=True, resolve_entities=False, no_network=True)

_EMAIL_RE = re.compile(r"[\w.+-]+@[\w-]+(?:\.[\w-]+)+")
_ELECTRONIC_ADDRESS_RE = re.compile(r"[\s.;,]*Electronic address:.*$", re.IGNORECASE | re.DOTALL)


@dataclass(frozen=True)
class FieldSpec:
    """
    One column of the extraction schema.

    `scope` restricts the search to the first `scope` element of the record
    (e.g. Year inside PubDate rather than DateCompleted). `attrib` filters
    matches on an attribute value, e.g. ("IdType", "doi"). `truncate` marks
    the columns that `max_chars` applies to. `label_attr` names an attribute
    whose value prefixes each match ("Label: text"), as in structured abstracts.
    """

    name: str
    tag: str
    occurrence: str = "first"
    trim: bool = True
    scope: Optional[str] = None
    attrib: Optional[Tuple[str, str]] = None
    truncate: bool = False
    label_attr: Optional[str] = None


# Record-level columns, in output order
RECORD_SCHEMA: Tuple[FieldSpec, ...] = (
    FieldSpec("pmid", "PMID"),
    FieldSpec("doi", "ArticleId", scope="ArticleIdList", attrib=("IdType", "doi")),
    FieldSpec("title", "ArticleTitle"),
    FieldSpec("abstract", "AbstractText", occurrence="all", truncate=True, label_attr="Label"),
    FieldSpec("year", "Year", scope="PubDate"),
    FieldSpec("month", "Month", scope="PubDate"),
    FieldSpec("day", "Day", scope="PubDate"),
    FieldSpec("journal_abbrev", "ISOAbbreviation", scope="Journal"),
    FieldSpec("journal", "Title", scope="Journal"),
)


def parse_markup(markup: Markup) -> Optional[etree._Element]:
    """Parse a markup string into an element. Returns None when nothing parseable is found."""
    if isinstance(markup, etree._Element):
        return markup
    if markup is None:
        return None
    if isinstance(markup, str):
        if not markup.strip():
            return None
        markup = markup.encode("utf-8")
    elif not markup.strip():
        return None

    try:
        return etree.fromstring(markup, parser=_PARSER)
    except etree.XMLSyntaxError as e:
        logger.debug(f"Unparseable markup: {e}")
        return None


def select(
    root: etree._Element,
    tag: str,
    scope: Optional[str] = None,
    attrib: Optional[Tuple[str, str]] = None
) -> Iterator[etree._Element]:
    """Yield `tag` elements under root (root included), in document order."""
    container = root
    if scope:
        container = next(root.iter(scope), None)
        if container is None:
            return

    for elem in container.iter(tag):
        if attrib is None or elem.get(attrib[0]) == attrib[1]:
            yield elem


def element_text(elem: etree._Element, trim: bool = True) -> str:
    """Inner text of elem with child tags stripped."""
    text = "".join(elem.itertext())
    if trim:
        text = " ".join(text.split())
    return text


def truncate(text: str, max_chars: Optional[int]) -> str:
    if max_chars:
        return text[:max_chars]
    return text


def extract_field(
    fragment: Markup,
    tag: str,
    occurrence: str = "first",
    trim: bool = True,
    max_chars: Optional[int] = None,
    scope: Optional[str] = None,
    attrib: Optional[Tuple[str, str]] = None
) -> Union[str, List[str]]:
    """
    Extract the text of `tag` from a record fragment.

    occurrence="first" returns a string, "" when the tag is absent.
    occurrence="all" returns every match in document order, [] when absent.
    trim collapses runs of whitespace (newlines included) to single spaces.
    max_chars truncates each extracted value; 0 or None keeps the full text.
    """
    if occurrence not in OCCURRENCES:
        raise ConfigError(f"Unknown occurrence '{occurrence}'. Expected 'first' or 'all'")
    max_chars = validate_max_chars(max_chars)

    root = parse_markup(fragment)
    matches = select(root, tag, scope, attrib) if root is not None else iter(())

    if occurrence == "first":
        elem = next(matches, None)
        if elem is None:
            logger.debug(f"Tag <{tag}> not found")
            return ""
        return truncate(element_text(elem, trim), max_chars)

    values = [truncate(element_text(elem, trim), max_chars) for elem in matches]
    if not values:
        logger.debug(f"Tag <{tag}> not found")
    return values


def extract_spec(fragment: Markup, spec: FieldSpec, max_chars: Optional[int] = None) -> str:
    """Apply one FieldSpec; repeated matches are joined with a space."""
    if spec.label_attr:
        value = _labelled_values(fragment, spec)
    else:
        value = extract_field(fragment, spec.tag, spec.occurrence, spec.trim, scope=spec.scope, attrib=spec.attrib)
    if isinstance(value, list):
        value = " ".join(v for v in value if v)
    if spec.truncate:
        value = truncate(value, max_chars)
    return value


def _labelled_values(fragment: Markup, spec: FieldSpec) -> List[str]:
    root = parse_markup(fragment)
    if root is None:
        return []

    values = []
    for elem in select(root, spec.tag, spec.scope, spec.attrib):
        text = element_text(elem, spec.trim)
        label = elem.get(spec.label_attr)
        values.append(f"{label}: {text}" if label and text else text)
        if spec.occurrence == "first":
            break
    return values


def find_email(text: str) -> str:
    """First e-mail address found in text, or ""."""
    match = _EMAIL_RE.search(text or "")
    return match.group(0).rstrip(".") if match else ""


def trim_address(address: str) -> str:
    """Drop the trailing 'Electronic address: ...' clause NCBI appends to affiliations."""
    address = _ELECTRONIC_ADDRESS_RE.sub("", address or "")
    return address.strip()
