"""Split a multi-record EFetch XML payload into single-record fragments."""

import logging
from typing import Iterator, Tuple

from lxml import etree

from pubmed_harvest.transform.fields import Markup, parse_markup

logger = logging.getLogger(__name__)

RECORD_TAGS: Tuple[str, ...] = ("PubmedArticle", "PubmedBookArticle")


def split_records(raw_markup: Markup, record_tags: Tuple[str, ...] = RECORD_TAGS) -> Iterator[str]:
    """
    Lazily yield one serialized record per <PubmedArticle> (or book article).

    Each fragment includes its own open/close tags and parses on its own.
    An empty or record-free payload yields nothing. The iterator is single-use.
    """
    root = parse_markup(raw_markup)
    if root is None:
        logger.debug("No parseable markup in payload")
        return

    for elem in root.iter(*record_tags):
        yield etree.tostring(elem, encoding="unicode", with_tail=False)
