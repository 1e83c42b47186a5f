"""Data classes shared by the matching engine and its adapters."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class RelationKind(str, Enum):
    """How a related study is linked to the checked record."""

    REPLICATION = "replication"  # the related study replicated the record
    ORIGINAL = "original"  # the record replicated the related (original) study
    REPRODUCTION = "reproduction"  # the related study reproduced the record


# Key of each kind in the remote response's ``record`` object
KIND_RESPONSE_KEYS = {
    RelationKind.REPLICATION: "replications",
    RelationKind.ORIGINAL: "originals",
    RelationKind.REPRODUCTION: "reproductions",
}


@dataclass(frozen=True)
class SourceRecord:
    """A library item to check.

    Attributes:
        local_id: Opaque caller identifier (Zotero item key, BibTeX key, ...)
        doi: DOI as stored in the library, not necessarily normalized
        title: Optional title, used for reporting only
    """

    local_id: str
    doi: str
    title: str | None = None


@dataclass(frozen=True)
class Author:
    given: str = ""
    family: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Author:
        return cls(given=str(data.get("given") or ""), family=str(data.get("family") or ""))


@dataclass(frozen=True)
class CandidateRelation:
    """A related study returned by the remote index for a digest prefix.

    ``digest`` is the full digest of the DOI the relation is attached to (the
    checked study), not of the related study itself.
    """

    digest: str
    kind: RelationKind
    doi: str | None = None
    title: str | None = None
    authors: tuple[Author, ...] = ()
    journal: str | None = None
    year: int | None = None
    volume: str | None = None
    issue: str | None = None
    pages: str | None = None
    outcome: str | None = None
    outcome_quote: str | None = None
    url: str | None = None
    apa_ref: str | None = None


@dataclass(frozen=True)
class ResolvedMatch:
    """A candidate relation whose digest equals the record's digest."""

    local_id: str
    relation: CandidateRelation

    @property
    def kind(self) -> RelationKind:
        return self.relation.kind


@dataclass(frozen=True)
class SuppressionEntry:
    """A relation the user does not want to see again.

    Attributes:
        identity: ``doi:<normalized doi>`` or ``url:<normalized url>``
        kind: Relation kind at the time of banning
        banned_at: ISO 8601 timestamp (UTC)
        reason: "manual" or "deletion"
        title: Title of the banned relation, for display
        doi: DOI of the banned relation, if any
        url: URL of the banned relation, if any
        original_title: Title of the record the relation was attached to
    """

    identity: str
    kind: RelationKind
    banned_at: str
    reason: str = "manual"
    title: str | None = None
    doi: str | None = None
    url: str | None = None
    original_title: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "identity": self.identity,
            "kind": self.kind.value,
            "banned_at": self.banned_at,
            "reason": self.reason,
            "title": self.title,
            "doi": self.doi,
            "url": self.url,
            "original_title": self.original_title,
        }


@dataclass(frozen=True)
class RecordResult:
    """Non-suppressed matches for one checked record, grouped by kind."""

    local_id: str
    doi: str
    replications: tuple[CandidateRelation, ...] = ()
    originals: tuple[CandidateRelation, ...] = ()
    reproductions: tuple[CandidateRelation, ...] = ()

    @property
    def has_matches(self) -> bool:
        return bool(self.replications or self.originals or self.reproductions)

    @property
    def matches(self) -> tuple[CandidateRelation, ...]:
        return self.replications + self.originals + self.reproductions

    def of_kind(self, kind: RelationKind) -> tuple[CandidateRelation, ...]:
        return {
            RelationKind.REPLICATION: self.replications,
            RelationKind.ORIGINAL: self.originals,
            RelationKind.REPRODUCTION: self.reproductions,
        }[kind]


@dataclass(frozen=True)
class BatchResult:
    """Outcome of one orchestration run.

    Attributes:
        results: One RecordResult per checked record, in input order
        skipped: Local IDs of records discarded for an empty or invalid DOI
        records_checked: Number of records that entered the lookup
        records_with_matches: Number of records with at least one match
        total_dois_found: Number of distinct normalized DOIs checked
        unique_prefixes_queried: Number of distinct prefixes sent
        suppressed_matches: Matches hidden by the suppression store
    """

    results: tuple[RecordResult, ...] = ()
    skipped: tuple[str, ...] = ()
    records_checked: int = 0
    records_with_matches: int = 0
    total_dois_found: int = 0
    unique_prefixes_queried: int = 0
    suppressed_matches: int = 0
    _index: dict[str, RecordResult] = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        self._index.update({r.local_id: r for r in self.results})

    def get(self, local_id: str) -> RecordResult | None:
        return self._index.get(local_id)

    @property
    def with_matches(self) -> list[RecordResult]:
        return [r for r in self.results if r.has_matches]


@dataclass(frozen=True)
class RelationRef:
    """Identity fields of a relation known only from the host library.

    Used when a relation has to be suppressed but the full candidate data is
    no longer available (e.g. the user deleted an item the checker added).
    """

    kind: RelationKind
    doi: str | None = None
    url: str | None = None
    title: str | None = None
