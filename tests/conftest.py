"""Shared fixtures: sample PubMed XML and a fake requests session."""

import json
from pathlib import Path

import pytest
import requests

from pubmed_harvest.extract import api_client
from pubmed_harvest.extract.api_client import PubMedAPIClient

DATA_DIR = Path(__file__).parent / "data"


class FakeResponse:

    def __init__(self, text="", status_code=200, headers=None):
        self.text = text
        self.status_code = status_code
        self.headers = headers or {}

    def json(self):
        return json.loads(self.text)

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"HTTP {self.status_code}", response=self)


class FakeSession:
    """Replays queued responses (or raises queued exceptions) and records every call."""

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.calls = []
        self.headers = {}
        self.closed = False

    def queue(self, *responses):
        self.responses.extend(responses)

    def get(self, url, params=None, timeout=None):
        self.calls.append({"url": url, "params": dict(params or {}), "timeout": timeout})
        if not self.responses:
            raise AssertionError(f"Unexpected request to {url}")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def close(self):
        self.closed = True


def esearch_response(count, webenv="MCID_abc123", query_key="1"):
    result = {"count": str(count), "retmax": "0", "retstart": "0", "idlist": []}
    if webenv:
        result["webenv"] = webenv
    if query_key:
        result["querykey"] = query_key
    return FakeResponse(json.dumps({"header": {"type": "esearch"}, "esearchresult": result}))


def make_article(pmid, authors=(), title="A title", abstract=""):
    """Minimal <PubmedArticle>; authors are (lastname, forename, affiliation) tuples."""
    author_xml = ""
    for last, fore, affiliation in authors:
        aff_xml = ""
        if affiliation:
            aff_xml = f"<AffiliationInfo><Affiliation>{affiliation}</Affiliation></AffiliationInfo>"
        author_xml += f"<Author><LastName>{last}</LastName><ForeName>{fore}</ForeName>{aff_xml}</Author>"
    author_list = f"<AuthorList>{author_xml}</AuthorList>" if authors else ""
    abstract_xml = f"<Abstract><AbstractText>{abstract}</AbstractText></Abstract>" if abstract else ""
    return (
        f"<PubmedArticle><MedlineCitation><PMID>{pmid}</PMID><Article>"
        f"<Journal><JournalIssue><PubDate><Year>2020</Year></PubDate></JournalIssue>"
        f"<Title>Test Journal</Title><ISOAbbreviation>Test J</ISOAbbreviation></Journal>"
        f"<ArticleTitle>{title}</ArticleTitle>{abstract_xml}{author_list}"
        f"</Article></MedlineCitation></PubmedArticle>"
    )


def make_article_set(count, start=1, authors=(("Doe", "Jane", "Lab 1"),)):
    articles = "".join(make_article(start + i, authors=authors) for i in range(count))
    return f'<?xml version="1.0" ?>\n<PubmedArticleSet>{articles}</PubmedArticleSet>'


@pytest.fixture
def sample_xml():
    with open(DATA_DIR / "pubmed_sample.xml", "r", encoding="utf-8") as f:
        return f.read()


@pytest.fixture
def sleeps(monkeypatch):
    """Record time.sleep calls instead of sleeping."""
    calls = []
    monkeypatch.setattr(api_client.time, "sleep", lambda seconds: calls.append(seconds))
    return calls


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def client(session, sleeps):
    c = PubMedAPIClient(email="tester@example.org", tool="pubmed-harvest-tests", backoff_base=2, backoff_max=8)
    c.session = session
    return c
