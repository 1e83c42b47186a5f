"""Shared fixtures for replication_checker tests."""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx
import pytest

from replication_checker import (
    Author,
    CandidateRelation,
    Hasher,
    RelationKind,
    RemoteIndexClient,
    SourceRecord,
)


@pytest.fixture
def hasher():
    return Hasher()


@pytest.fixture
def make_record():
    """Factory fixture for creating SourceRecords."""

    def _make_record(local_id: str = "ITEM0001", doi: str = "10.1234/abc", **kwargs) -> SourceRecord:
        return SourceRecord(local_id=local_id, doi=doi, **kwargs)

    return _make_record


@pytest.fixture
def make_relation(hasher):
    """Factory fixture for creating CandidateRelations attached to ``of_doi``."""

    def _make_relation(
        of_doi: str = "10.1234/abc",
        kind: RelationKind = RelationKind.REPLICATION,
        doi: str | None = "10.5555/rep.1",
        **kwargs,
    ) -> CandidateRelation:
        fields = {
            "title": "A Replication Study",
            "authors": (Author("Jane", "Doe"),),
            "journal": "Journal of Replications",
            "year": 2021,
        }
        fields.update(kwargs)
        return CandidateRelation(digest=hasher.digest(of_doi), kind=kind, doi=doi, **fields)

    return _make_relation


@pytest.fixture
def make_study():
    """Factory fixture for related-study objects as returned by the API."""

    def _make_study(doi: str | None = "10.5555/rep.1", **kwargs) -> dict[str, Any]:
        study = {
            "doi": doi,
            "title": "A Replication Study",
            "authors": [{"given": "Jane", "family": "Doe"}],
            "journal": "Journal of Replications",
            "year": 2021,
            "volume": "3",
            "issue": "1",
            "pages": "1-10",
            "outcome": "successful",
            "outcome_quote": "We replicated the effect.",
            "url": None,
            "apa_ref": None,
        }
        study.update(kwargs)
        return study

    return _make_study


@pytest.fixture
def make_article(hasher, make_study):
    """Factory fixture for one article of a prefix-lookup response."""

    def _make_article(
        doi: str = "10.1234/abc",
        replications: list[dict[str, Any]] | None = None,
        originals: list[dict[str, Any]] | None = None,
        reproductions: list[dict[str, Any]] | None = None,
        with_hash: bool = True,
    ) -> dict[str, Any]:
        article: dict[str, Any] = {
            "doi": doi,
            "title": "Original Study",
            "record": {
                "stats": {},
                "replications": [make_study()] if replications is None else replications,
                "originals": originals or [],
                "reproductions": reproductions or [],
            },
        }
        if with_hash:
            article["doi_hash"] = hasher.digest(doi)
        return article

    return _make_article


@pytest.fixture
def make_response(hasher):
    """Build a prefix-lookup payload from a list of articles."""

    def _make_response(*articles: dict[str, Any]) -> dict[str, Any]:
        results: dict[str, list[dict[str, Any]]] = {}
        for article in articles:
            results.setdefault(hasher.prefix(article["doi"]), []).append(article)
        return {"results": results}

    return _make_response


@pytest.fixture
def mock_api():
    """Factory for a RemoteIndexClient backed by httpx.MockTransport.

    The handler receives the decoded JSON body and returns (status, payload).
    Every decoded request body is appended to ``client.requests``.
    """

    def _mock_api(handler) -> RemoteIndexClient:
        requests: list[dict[str, Any]] = []

        def _transport(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            requests.append(body)
            status, payload = handler(body)
            if isinstance(payload, (bytes, str)):
                return httpx.Response(status, content=payload)
            return httpx.Response(status, json=payload)

        http = httpx.AsyncClient(transport=httpx.MockTransport(_transport))
        client = RemoteIndexClient(endpoint="https://api.test/v1/prefix-lookup", client=http)
        client.requests = requests
        return client

    return _mock_api


class FakeLookup:
    """In-memory prefix lookup serving fixed collision sets."""

    def __init__(self, collision_sets: dict[str, list[CandidateRelation]] | None = None, fail_on_call: int = 0):
        self.collision_sets = collision_sets or {}
        self.fail_on_call = fail_on_call
        self.calls: list[list[str]] = []

    async def lookup(self, prefixes):
        from replication_checker import LookupFailed

        batch = list(prefixes)
        self.calls.append(batch)
        if self.fail_on_call and len(self.calls) == self.fail_on_call:
            raise LookupFailed("boom", prefix_count=len(batch), cause="HTTP 503")
        return {p: list(self.collision_sets.get(p, [])) for p in batch}


@pytest.fixture
def fake_lookup():
    """Factory fixture for creating FakeLookup instances."""

    def _create(collision_sets=None, fail_on_call: int = 0) -> FakeLookup:
        return FakeLookup(collision_sets, fail_on_call)

    return _create


@pytest.fixture
def logger():
    """Create a test logger."""
    return logging.getLogger("test")


@pytest.fixture
def make_entry():
    """Factory fixture for creating BibTeX entries."""

    def _make_entry(**kwargs) -> dict[str, Any]:
        entry = {
            "ENTRYTYPE": "article",
            "ID": kwargs.pop("ID", "testkey"),
            "title": "Example Title",
            "author": "Doe, Jane and Smith, John",
            "year": "2020",
        }
        entry.update(kwargs)
        return entry

    return _make_entry
