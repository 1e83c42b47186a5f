"""Tests for the batch orchestration pipeline."""

from __future__ import annotations

import asyncio
import logging
from unittest.mock import MagicMock

import pytest

from replication_checker import (
    BatchOrchestrator,
    Hasher,
    LookupFailed,
    RelationKind,
    SuppressionStore,
    SuppressionStoreUnavailable,
)
from replication_checker.orchestrator import chunked, validate_record


class FixedPrefixHasher(Hasher):
    """Real digests, but every DOI lands in the same prefix bucket."""

    def prefix(self, doi: str) -> str:
        return "a1b"


class TestHelpers:
    def test_chunked(self):
        assert chunked(["a", "b", "c", "d", "e"], 2) == [["a", "b"], ["c", "d"], ["e"]]
        assert chunked([], 3) == []

    def test_validate_record(self, make_record):
        from replication_checker import InvalidInput

        assert validate_record(make_record()).doi == "10.1234/abc"
        with pytest.raises(InvalidInput):
            validate_record(make_record(doi=""))
        with pytest.raises(InvalidInput):
            validate_record(make_record(doi="not-a-doi"))

    def test_invalid_batch_size(self, fake_lookup):
        with pytest.raises(ValueError):
            BatchOrchestrator(fake_lookup(), max_batch_size=0)


class TestBatchOrchestratorRun:
    """Tests for BatchOrchestrator.run()."""

    def test_shared_prefix_resolves_each_record(self, fake_lookup, make_record, make_relation):
        hasher = FixedPrefixHasher()
        records = [make_record(local_id=f"R{i:03d}", doi=f"10.1000/paper.{i}") for i in range(100)]
        collision_set = [make_relation(of_doi=r.doi, doi=f"10.5555/rep.{i}") for i, r in enumerate(records)]
        lookup = fake_lookup({"a1b": collision_set})

        result = BatchOrchestrator(lookup, hasher=hasher).run_sync(records)

        assert lookup.calls == [["a1b"]]
        assert result.unique_prefixes_queried == 1
        assert result.records_checked == 100
        assert result.records_with_matches == 100
        for i, record_result in enumerate(result.results):
            assert [r.doi for r in record_result.replications] == [f"10.5555/rep.{i}"]

    def test_shared_prefix_only_true_matches_surface(self, fake_lookup, make_record, make_relation):
        records = [make_record(local_id=f"R{i:03d}", doi=f"10.1000/paper.{i}") for i in range(100)]
        collision_set = [
            make_relation(of_doi="10.9999/elsewhere.1", doi="10.5555/n1"),
            make_relation(of_doi="10.1000/paper.10", doi="10.5555/hit.10"),
            make_relation(of_doi="10.9999/elsewhere.2", doi="10.5555/n2"),
            make_relation(of_doi="10.1000/paper.42", doi="10.5555/hit.42"),
            make_relation(of_doi="10.9999/elsewhere.3", doi="10.5555/n3"),
        ]
        lookup = fake_lookup({"a1b": collision_set})

        result = BatchOrchestrator(lookup, hasher=FixedPrefixHasher()).run_sync(records)

        assert lookup.calls == [["a1b"]]
        assert result.records_with_matches == 2
        assert [r.doi for r in result.get("R010").replications] == ["10.5555/hit.10"]
        assert [r.doi for r in result.get("R042").replications] == ["10.5555/hit.42"]
        empty = [r for r in result.results if not r.matches]
        assert len(empty) == 98

    def test_no_matches(self, fake_lookup, make_record):
        result = BatchOrchestrator(fake_lookup()).run_sync([make_record()])
        assert result.records_checked == 1
        assert result.records_with_matches == 0
        assert not result.get("ITEM0001").has_matches

    def test_groups_kinds(self, hasher, fake_lookup, make_record, make_relation):
        rels = [
            make_relation(doi="10.5555/a"),
            make_relation(kind=RelationKind.ORIGINAL, doi="10.5555/b"),
            make_relation(kind=RelationKind.REPRODUCTION, doi=None, url="https://osf.io/x"),
        ]
        lookup = fake_lookup({hasher.prefix("10.1234/abc"): rels})

        r = BatchOrchestrator(lookup).run_sync([make_record()]).get("ITEM0001")

        assert len(r.replications) == 1
        assert len(r.originals) == 1
        assert len(r.reproductions) == 1
        assert r.doi == "10.1234/abc"

    def test_is_idempotent(self, hasher, fake_lookup, make_record, make_relation):
        lookup = fake_lookup({hasher.prefix("10.1234/abc"): [make_relation()]})
        orchestrator = BatchOrchestrator(lookup)
        records = [make_record(), make_record(local_id="ITEM0002", doi="10.1234/xyz")]

        assert orchestrator.run_sync(records) == orchestrator.run_sync(records)

    def test_skips_invalid_records(self, fake_lookup, make_record):
        records = [make_record(local_id="A", doi=""), make_record(local_id="B", doi="garbage"), make_record()]
        result = BatchOrchestrator(fake_lookup()).run_sync(records)
        assert result.skipped == ("A", "B")
        assert result.records_checked == 1
        assert result.get("A") is None

    def test_empty_input(self, fake_lookup):
        lookup = fake_lookup()
        result = BatchOrchestrator(lookup).run_sync([])
        assert result.records_checked == 0
        assert lookup.calls == []

    def test_counts_unique_dois(self, fake_lookup, make_record):
        records = [
            make_record(local_id="A", doi="10.1234/abc"),
            make_record(local_id="B", doi="https://doi.org/10.1234/ABC"),
        ]
        result = BatchOrchestrator(fake_lookup()).run_sync(records)
        assert result.total_dois_found == 1
        assert result.unique_prefixes_queried == 1
        assert result.records_checked == 2

    def test_batches_prefixes(self, fake_lookup, make_record):
        records = [make_record(local_id=f"R{i}", doi=f"10.1000/p{i}") for i in range(40)]
        lookup = fake_lookup()

        result = BatchOrchestrator(lookup, max_batch_size=5).run_sync(records)

        sent = [p for call in lookup.calls for p in call]
        assert all(len(call) <= 5 for call in lookup.calls)
        assert len(sent) == len(set(sent)) == result.unique_prefixes_queried
        assert sent == sorted(sent)


class TestLookupFailures:
    """A failing batch aborts the whole run."""

    def test_failure_propagates_without_partial_result(self, fake_lookup, make_record):
        records = [make_record(local_id=f"R{i}", doi=f"10.1000/p{i}") for i in range(30)]
        lookup = fake_lookup(fail_on_call=2)
        orchestrator = BatchOrchestrator(lookup, max_batch_size=5)
        _, prefixes = orchestrator.prefix_pairs(records)

        with pytest.raises(LookupFailed) as exc_info:
            orchestrator.run_sync(records)

        err = exc_info.value
        assert err.batch == 2
        pending = set(prefixes[5:])
        expected = {r.local_id for r in records if orchestrator.hasher.prefix(r.doi) in pending}
        assert set(err.unprocessed) == expected
        assert len(lookup.calls) == 2

    def test_retries_before_failing(self, fake_lookup, make_record):
        lookup = fake_lookup(fail_on_call=1)
        orchestrator = BatchOrchestrator(lookup, retries=1, retry_backoff=0)
        result = orchestrator.run_sync([make_record()])
        assert len(lookup.calls) == 2
        assert result.records_checked == 1


class TestSuppressionFiltering:
    def test_suppressed_relations_hidden(self, hasher, fake_lookup, make_record, make_relation):
        kept = make_relation(doi="10.5555/keep")
        banned = make_relation(doi="10.5555/banned")
        lookup = fake_lookup({hasher.prefix("10.1234/abc"): [kept, banned]})
        store = SuppressionStore()
        store.add(banned)

        result = BatchOrchestrator(lookup, suppression=store).run_sync([make_record()])

        assert [r.doi for r in result.get("ITEM0001").replications] == ["10.5555/keep"]
        assert result.suppressed_matches == 1

    def test_fully_suppressed_record_has_no_matches(self, hasher, fake_lookup, make_record, make_relation):
        rel = make_relation()
        store = SuppressionStore()
        store.add(rel)
        lookup = fake_lookup({hasher.prefix("10.1234/abc"): [rel]})

        result = BatchOrchestrator(lookup, suppression=store).run_sync([make_record()])

        assert result.records_with_matches == 0

    def test_unsuppressed_relation_reappears(self, hasher, fake_lookup, make_record, make_relation):
        rel = make_relation()
        store = SuppressionStore()
        store.add(rel)
        lookup = fake_lookup({hasher.prefix("10.1234/abc"): [rel]})
        orchestrator = BatchOrchestrator(lookup, suppression=store)

        assert orchestrator.run_sync([make_record()]).records_with_matches == 0
        assert orchestrator.run_sync([make_record()]).records_with_matches == 0

        store.remove(["10.5555/rep.1"])
        result = orchestrator.run_sync([make_record()])

        assert [r.doi for r in result.get("ITEM0001").replications] == ["10.5555/rep.1"]
        assert result.suppressed_matches == 0

    def test_unavailable_store_shows_everything(self, hasher, fake_lookup, make_record, make_relation, caplog):
        store = MagicMock()
        store.is_suppressed.side_effect = SuppressionStoreUnavailable("locked")
        lookup = fake_lookup({hasher.prefix("10.1234/abc"): [make_relation(), make_relation(doi="10.5555/x")]})

        with caplog.at_level(logging.WARNING):
            result = BatchOrchestrator(lookup, suppression=store).run_sync([make_record()])

        assert len(result.get("ITEM0001").replications) == 2
        assert store.is_suppressed.call_count == 1
        assert "Suppression store unavailable" in caplog.text

    def test_store_consulted_again_on_next_run(self, hasher, fake_lookup, make_record, make_relation):
        store = MagicMock()
        store.is_suppressed.side_effect = [SuppressionStoreUnavailable("locked"), True]
        lookup = fake_lookup({hasher.prefix("10.1234/abc"): [make_relation()]})
        orchestrator = BatchOrchestrator(lookup, suppression=store)

        first = orchestrator.run_sync([make_record()])
        second = orchestrator.run_sync([make_record()])

        assert first.get("ITEM0001").has_matches
        assert not second.get("ITEM0001").has_matches
        assert second.suppressed_matches == 1

    def test_store_failure_does_not_leak_into_overlapping_run(self, hasher, fake_lookup, make_record, make_relation):
        class YieldingLookup(type(fake_lookup())):
            async def lookup(self, prefixes):
                await asyncio.sleep(0)
                return await super().lookup(prefixes)

        store = MagicMock()
        store.is_suppressed.side_effect = [SuppressionStoreUnavailable("locked"), True]
        orchestrator = BatchOrchestrator(
            YieldingLookup({hasher.prefix("10.1234/abc"): [make_relation()]}), suppression=store
        )

        async def go():
            return await asyncio.gather(orchestrator.run([make_record()]), orchestrator.run([make_record()]))

        first, second = asyncio.run(go())

        assert first.get("ITEM0001").has_matches
        assert first.suppressed_matches == 0
        assert second.suppressed_matches == 1
        assert store.is_suppressed.call_count == 2


class TestAsyncRun:
    def test_run_inside_event_loop(self, fake_lookup, make_record):
        async def go():
            return await BatchOrchestrator(fake_lookup()).run([make_record()])

        assert asyncio.run(go()).records_checked == 1
