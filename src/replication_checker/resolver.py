"""Local, exact resolution of collision sets."""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from replication_checker.hashing import Hasher
from replication_checker.models import CandidateRelation, RelationKind, ResolvedMatch, SourceRecord


class MatchResolver:
    """Keeps the candidates of a collision set that belong to a given record.

    A shared prefix only says the record *might* be in the remote index;
    membership is decided by comparing the full digest.
    """

    def __init__(self, hasher: Hasher | None = None) -> None:
        self.hasher = hasher or Hasher()

    def resolve(self, record: SourceRecord, collision_set: Sequence[CandidateRelation]) -> list[ResolvedMatch]:
        """Return the candidates whose digest equals the record's digest, in remote order."""
        if not collision_set:
            return []
        record_digest = self.hasher.digest(record.doi)
        return [
            ResolvedMatch(local_id=record.local_id, relation=candidate)
            for candidate in collision_set
            if candidate.digest == record_digest
        ]

    @staticmethod
    def group(matches: Iterable[ResolvedMatch]) -> dict[RelationKind, list[CandidateRelation]]:
        """Split matches by relation kind, keeping order within each kind."""
        grouped: dict[RelationKind, list[CandidateRelation]] = {kind: [] for kind in RelationKind}
        for match in matches:
            grouped[match.kind].append(match.relation)
        return grouped
