"""Client for the FLoRA prefix-lookup endpoint.

Only digest prefixes ever leave the process. The full DOIs, titles and any
other library metadata stay local; matching against the returned collision
sets happens in :mod:`replication_checker.resolver`.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

import httpx

from replication_checker.errors import LookupFailed
from replication_checker.hashing import Hasher
from replication_checker.models import KIND_RESPONSE_KEYS, Author, CandidateRelation, RelationKind

DEFAULT_ENDPOINT = "https://rep-api.forrt.org/v1/prefix-lookup"
DEFAULT_USER_AGENT = "replication-checker/0.3 (+https://forrt.org/replication-hub)"

logger = logging.getLogger(__name__)


class ResponseShapeError(ValueError):
    """The remote response did not have the expected structure."""


def _str_or_none(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value).strip()
    if not s or s.lower() == "na":
        return None
    return s


def _int_or_none(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def study_to_relation(study: dict[str, Any], digest: str, kind: RelationKind) -> CandidateRelation:
    """Convert one related-study object from the API into a CandidateRelation."""
    if not isinstance(study, dict):
        raise ResponseShapeError(f"related study is {type(study).__name__}, expected object")

    authors = study.get("authors") or []
    if not isinstance(authors, list):
        authors = []

    return CandidateRelation(
        digest=digest,
        kind=kind,
        doi=_str_or_none(study.get("doi")),
        title=_str_or_none(study.get("title")),
        authors=tuple(Author.from_dict(a) for a in authors if isinstance(a, dict)),
        journal=_str_or_none(study.get("journal")),
        year=_int_or_none(study.get("year")),
        volume=_str_or_none(study.get("volume")),
        issue=_str_or_none(study.get("issue")),
        pages=_str_or_none(study.get("pages")),
        outcome=_str_or_none(study.get("outcome")),
        outcome_quote=_str_or_none(study.get("outcome_quote")),
        url=_str_or_none(study.get("url")),
        apa_ref=_str_or_none(study.get("apa_ref")),
    )


def parse_prefix_response(
    payload: Any,
    prefixes: Iterable[str],
    hasher: Hasher | None = None,
) -> dict[str, list[CandidateRelation]]:
    """Flatten a prefix-lookup response into collision sets.

    Expected shape::

        {"results": {"a1b": [{"doi": ..., "doi_hash": ...,
                              "record": {"replications": [...],
                                         "originals": [...],
                                         "reproductions": [...]}}]}}

    Every requested prefix gets an entry, empty when the service returned
    nothing for it. Prefixes the caller did not ask for are ignored.

    Raises:
        ResponseShapeError: If the payload does not match the shape above
    """
    hasher = hasher or Hasher()
    if not isinstance(payload, dict) or not isinstance(payload.get("results"), dict):
        raise ResponseShapeError("response has no 'results' object")

    collision_sets: dict[str, list[CandidateRelation]] = {p: [] for p in prefixes}
    for prefix, articles in payload["results"].items():
        if prefix not in collision_sets:
            continue
        if not isinstance(articles, list):
            raise ResponseShapeError(f"results for prefix {prefix!r} are not a list")
        for article in articles:
            if not isinstance(article, dict) or not isinstance(article.get("record"), dict):
                raise ResponseShapeError(f"article under prefix {prefix!r} has no 'record' object")

            digest = _str_or_none(article.get("doi_hash"))
            if digest:
                digest = digest.lower()
            elif _str_or_none(article.get("doi")):
                digest = hasher.digest(article["doi"])
            else:
                raise ResponseShapeError(f"article under prefix {prefix!r} has neither 'doi_hash' nor 'doi'")

            record = article["record"]
            for kind, key in KIND_RESPONSE_KEYS.items():
                studies = record.get(key) or []
                if not isinstance(studies, list):
                    raise ResponseShapeError(f"'{key}' under prefix {prefix!r} is not a list")
                collision_sets[prefix].extend(study_to_relation(s, digest, kind) for s in studies)

    return collision_sets


class RemoteIndexClient:
    """Async client for the prefix-lookup service.

    The client fails fast: any transport error, timeout, unexpected status or
    unreadable body raises :class:`LookupFailed`. Retrying is left to the
    caller.
    """

    def __init__(
        self,
        endpoint: str = DEFAULT_ENDPOINT,
        timeout: float = 30.0,
        user_agent: str = DEFAULT_USER_AGENT,
        hasher: Hasher | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            endpoint: URL of the prefix-lookup endpoint
            timeout: Request timeout in seconds
            user_agent: User-Agent header value
            hasher: Hasher used when a response omits digests
            client: Pre-built httpx.AsyncClient (e.g. with a mock transport)
        """
        self.endpoint = endpoint
        self.timeout = timeout
        self.user_agent = user_agent
        self.hasher = hasher or Hasher()
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create the underlying httpx.AsyncClient."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                headers={"User-Agent": self.user_agent},
                follow_redirects=True,
            )
        return self._client

    async def lookup(self, prefixes: Iterable[str]) -> dict[str, list[CandidateRelation]]:
        """Fetch the collision set of every prefix.

        Args:
            prefixes: Digest prefixes; duplicates are sent once

        Returns:
            Mapping of each requested prefix to its candidate relations

        Raises:
            LookupFailed: On transport failure, non-200 status or bad response
        """
        unique = sorted(set(prefixes))
        if not unique:
            return {}

        logger.debug(f"Querying prefix lookup with {len(unique)} prefixes")
        try:
            resp = await self.client.post(
                self.endpoint,
                json={"prefixes": unique},
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise LookupFailed(
                f"Failed to reach replication API: {e}",
                prefix_count=len(unique),
                cause=e,
            ) from e

        if resp.status_code != 200:
            raise LookupFailed(
                f"Replication API returned status {resp.status_code}",
                prefix_count=len(unique),
                cause=f"HTTP {resp.status_code}",
            )

        try:
            collision_sets = parse_prefix_response(resp.json(), unique, self.hasher)
        except ValueError as e:  # JSONDecodeError, UnicodeDecodeError, ResponseShapeError
            raise LookupFailed(
                f"Unrecognized replication API response: {e}",
                prefix_count=len(unique),
                cause=e,
            ) from e

        total = sum(len(v) for v in collision_sets.values())
        logger.debug(f"Prefix lookup returned {total} candidate relations")
        return collision_sets

    async def close(self) -> None:
        """Close the underlying client if this instance created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> RemoteIndexClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()
