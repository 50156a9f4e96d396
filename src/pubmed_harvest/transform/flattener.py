"""Flatten one PubMed record into per-author rows."""

import logging
import warnings
from typing import Dict, List, Optional, Sequence

from pubmed_harvest.config import validate_max_chars
from pubmed_harvest.errors import ExtractionWarning
from pubmed_harvest.transform.fields import (
    RECORD_SCHEMA,
    FieldSpec,
    Markup,
    element_text,
    extract_spec,
    find_email,
    parse_markup,
    select,
    trim_address,
)

logger = logging.getLogger(__name__)

AUTHOR_COLUMNS = ("lastname", "firstname", "address", "email")

AuthorRow = Dict[str, str]


def columns_for(schema: Sequence[FieldSpec] = RECORD_SCHEMA) -> List[str]:
    return [spec.name for spec in schema] + list(AUTHOR_COLUMNS)


def parse_authors(record: Markup) -> List[Dict[str, str]]:
    """
    Author entries of the record's first <AuthorList>, in document order.

    Collective authors report their group name as lastname. Only the first
    affiliation feeds the address; the email may come from any of them.
    """
    root = parse_markup(record)
    if root is None:
        return []

    author_list = next(select(root, "AuthorList"), None)
    if author_list is None:
        return []

    authors = []
    for author_elem in author_list.findall("Author"):
        last_name = _first_text(author_elem, "LastName") or _first_text(author_elem, "CollectiveName")
        affiliations = [element_text(a) for a in select(author_elem, "Affiliation")]
        affiliation = affiliations[0] if affiliations else ""

        email = ""
        for text in affiliations:
            email = find_email(text)
            if email:
                break

        authors.append({
            "lastname": last_name,
            "firstname": _first_text(author_elem, "ForeName"),
            "address": trim_address(affiliation),
            "email": email,
        })

    return authors


def autofill_addresses(authors: List[Dict[str, str]]) -> List[Dict[str, str]]:
    """
    Fill empty addresses with the nearest preceding non-empty one.

    Best effort: PubMed records often state a shared affiliation once. Authors
    listed before the first known address are left empty.
    """
    filled = []
    last_address = ""
    for author in authors:
        author = dict(author)
        if author["address"]:
            last_address = author["address"]
        elif last_address:
            author["address"] = last_address
        filled.append(author)
    return filled


def flatten_record(
    fragment: Markup,
    schema: Sequence[FieldSpec] = RECORD_SCHEMA,
    max_chars: Optional[int] = None,
    autofill: bool = False
) -> List[AuthorRow]:
    """
    One row per author, record-level columns repeated on every row.

    A record without authors still yields a single row with empty author
    columns; a fragment that cannot be parsed yields one all-empty row.
    """
    max_chars = validate_max_chars(max_chars)
    root = parse_markup(fragment)
    if root is None:
        warnings.warn("Unparseable record fragment; emitting an empty row", ExtractionWarning, stacklevel=2)
        logger.warning("Unparseable record fragment; emitting an empty row")
        return [dict.fromkeys(columns_for(schema), "")]

    record = {spec.name: extract_spec(root, spec, max_chars) for spec in schema}

    authors = parse_authors(root)
    if autofill:
        authors = autofill_addresses(authors)
    if not authors:
        logger.debug(f"No authors listed (PMID: {record.get('pmid', '')})")
        authors = [dict.fromkeys(AUTHOR_COLUMNS, "")]

    return [{**record, **author} for author in authors]


def _first_text(elem, tag: str) -> str:
    child = elem.find(tag)
    if child is None:
        return ""
    return element_text(child)
