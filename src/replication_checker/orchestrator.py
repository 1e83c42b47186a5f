"""End-to-end batch matching pipeline."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

from replication_checker.errors import InvalidInput, LookupFailed, SuppressionStoreUnavailable
from replication_checker.hashing import Hasher, is_plausible_doi
from replication_checker.models import (
    BatchResult,
    CandidateRelation,
    RecordResult,
    RelationKind,
    ResolvedMatch,
    SourceRecord,
)
from replication_checker.resolver import MatchResolver

DEFAULT_BATCH_SIZE = 500


class PrefixLookup(Protocol):
    async def lookup(self, prefixes: Sequence[str]) -> dict[str, list[CandidateRelation]]: ...


class SuppressionLookup(Protocol):
    def is_suppressed(self, relation: CandidateRelation) -> bool: ...


def validate_record(record: SourceRecord) -> SourceRecord:
    """Raise InvalidInput unless the record carries a plausible DOI."""
    if not record.doi or not record.doi.strip():
        raise InvalidInput(f"Record {record.local_id} has no DOI")
    if not is_plausible_doi(record.doi):
        raise InvalidInput(f"Record {record.local_id} has an invalid DOI")
    return record


def chunked(items: Sequence[str], size: int) -> list[list[str]]:
    """Split a sequence into consecutive batches of at most ``size`` items."""
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


@dataclass
class _RunState:
    """Mutable state scoped to a single run."""

    suppression_failed: bool = False


class BatchOrchestrator:
    """Checks a collection of records against the remote index.

    The run is all-or-nothing: if any lookup batch fails, :class:`LookupFailed`
    propagates and no partial result is returned. Batches are sent one at a
    time, so at most one request is in flight per run.
    """

    def __init__(
        self,
        client: PrefixLookup,
        suppression: SuppressionLookup | None = None,
        hasher: Hasher | None = None,
        max_batch_size: int = DEFAULT_BATCH_SIZE,
        retries: int = 0,
        retry_backoff: float = 1.0,
        logger: logging.Logger | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            client: Prefix lookup client (usually RemoteIndexClient)
            suppression: Store consulted to hide banned relations
            hasher: Hasher shared with the resolver
            max_batch_size: Maximum number of prefixes per lookup request
            retries: Extra attempts per failed batch (0 = fail fast)
            retry_backoff: Initial delay between attempts, doubled each time
            logger: Logger instance (creates one if not provided)
        """
        if max_batch_size < 1:
            raise ValueError("max_batch_size must be at least 1")
        self.client = client
        self.suppression = suppression
        self.hasher = hasher or Hasher()
        self.resolver = MatchResolver(self.hasher)
        self.max_batch_size = max_batch_size
        self.retries = max(retries, 0)
        self.retry_backoff = retry_backoff
        self.logger = logger or logging.getLogger(__name__)

    # ------------- Steps -------------

    def partition(self, records: Sequence[SourceRecord]) -> tuple[list[SourceRecord], list[str]]:
        """Split records into checkable ones and local IDs of discarded ones."""
        valid: list[SourceRecord] = []
        skipped: list[str] = []
        for record in records:
            try:
                valid.append(validate_record(record))
            except InvalidInput as e:
                self.logger.debug(str(e))
                skipped.append(record.local_id)
        return valid, skipped

    def prefix_pairs(self, records: Sequence[SourceRecord]) -> tuple[list[tuple[SourceRecord, str]], list[str]]:
        """Pair each record with its prefix; return the pairs and the sorted unique prefixes."""
        pairs = [(record, self.hasher.prefix(record.doi)) for record in records]
        unique = sorted({p for _, p in pairs})
        return pairs, unique

    async def _lookup_batch(self, batch: list[str], number: int) -> dict[str, list[CandidateRelation]]:
        delay = self.retry_backoff
        for attempt in range(self.retries + 1):
            try:
                return await self.client.lookup(batch)
            except LookupFailed as e:
                if attempt >= self.retries:
                    raise
                self.logger.warning(f"Lookup batch {number} failed ({e}), retrying in {delay:.1f}s")
                await asyncio.sleep(delay)
                delay = min(delay * 2, 16.0)
        raise AssertionError("unreachable")

    async def fetch_collision_sets(
        self,
        pairs: Sequence[tuple[SourceRecord, str]],
        prefixes: Sequence[str],
    ) -> dict[str, list[CandidateRelation]]:
        """Query all prefixes in sequential batches.

        Raises:
            LookupFailed: With ``batch`` and ``unprocessed`` filled in
        """
        collision_sets: dict[str, list[CandidateRelation]] = {}
        batches = chunked(prefixes, self.max_batch_size)
        for number, batch in enumerate(batches, 1):
            self.logger.debug(f"Querying batch {number}/{len(batches)} with {len(batch)} prefixes")
            try:
                response = await self._lookup_batch(batch, number)
            except LookupFailed as e:
                pending = set(batch)
                for later in batches[number:]:
                    pending.update(later)
                e.batch = number
                e.unprocessed = tuple(r.local_id for r, p in pairs if p in pending)
                raise
            for prefix in batch:
                collision_sets[prefix] = list(response.get(prefix, []))
        return collision_sets

    def _is_suppressed(self, relation: CandidateRelation, state: _RunState) -> bool:
        if self.suppression is None or state.suppression_failed:
            return False
        try:
            return self.suppression.is_suppressed(relation)
        except SuppressionStoreUnavailable as e:
            self.logger.warning(f"Suppression store unavailable, showing all matches: {e}")
            state.suppression_failed = True
            return False

    def filter_suppressed(
        self,
        matches: list[ResolvedMatch],
        state: _RunState | None = None,
    ) -> tuple[list[ResolvedMatch], int]:
        """Drop suppressed matches; return the kept ones and the number dropped."""
        state = state or _RunState()
        kept = [m for m in matches if not self._is_suppressed(m.relation, state)]
        return kept, len(matches) - len(kept)

    # ------------- Run -------------

    async def run(self, records: Sequence[SourceRecord]) -> BatchResult:
        """Check records and return per-record matches plus run statistics.

        Raises:
            LookupFailed: If any lookup batch fails
        """
        state = _RunState()
        valid, skipped = self.partition(records)
        if skipped:
            self.logger.info(f"Skipped {len(skipped)} record(s) without a valid DOI")

        pairs, prefixes = self.prefix_pairs(valid)
        self.logger.info(f"Checking {len(valid)} record(s) using {len(prefixes)} unique prefix(es)")

        start = time.monotonic()
        collision_sets = await self.fetch_collision_sets(pairs, prefixes)
        self.logger.debug(f"Lookup finished in {time.monotonic() - start:.2f}s")

        results: list[RecordResult] = []
        suppressed_total = 0
        for record, prefix in pairs:
            matches = self.resolver.resolve(record, collision_sets.get(prefix, []))
            kept, suppressed = self.filter_suppressed(matches, state)
            suppressed_total += suppressed
            grouped = MatchResolver.group(kept)
            results.append(
                RecordResult(
                    local_id=record.local_id,
                    doi=self.hasher.normalize(record.doi),
                    replications=tuple(grouped[RelationKind.REPLICATION]),
                    originals=tuple(grouped[RelationKind.ORIGINAL]),
                    reproductions=tuple(grouped[RelationKind.REPRODUCTION]),
                )
            )
        batch_result = BatchResult(
            results=tuple(results),
            skipped=tuple(skipped),
            records_checked=len(results),
            records_with_matches=sum(1 for r in results if r.has_matches),
            total_dois_found=len({r.doi for r in results}),
            unique_prefixes_queried=len(prefixes),
            suppressed_matches=suppressed_total,
        )
        self.logger.info(
            f"Found related studies for {batch_result.records_with_matches} of "
            f"{batch_result.records_checked} record(s)"
        )
        return batch_result

    def run_sync(self, records: Sequence[SourceRecord]) -> BatchResult:
        """Blocking wrapper around :meth:`run` for callers without an event loop."""
        return asyncio.run(self.run(records))
