"""Tests for local collision-set resolution."""

from __future__ import annotations

from replication_checker import Hasher, MatchResolver, RelationKind


class TestMatchResolver:
    def test_single_true_match_among_collisions(self, make_record, make_relation):
        record = make_record(doi="10.1234/target")
        noise = [make_relation(of_doi=f"10.9999/other.{i}", doi=f"10.5555/noise.{i}") for i in range(49)]
        true_match = make_relation(of_doi="10.1234/target", doi="10.5555/real")
        collision_set = noise[:20] + [true_match] + noise[20:]

        matches = MatchResolver().resolve(record, collision_set)

        assert len(matches) == 1
        assert matches[0].relation is true_match
        assert matches[0].local_id == record.local_id

    def test_equivalent_doi_forms_match(self, make_record, make_relation):
        record = make_record(doi="https://doi.org/10.1234/TARGET")
        rel = make_relation(of_doi="10.1234/target")
        assert len(MatchResolver().resolve(record, [rel])) == 1

    def test_empty_collision_set(self, make_record):
        assert MatchResolver().resolve(make_record(), []) == []

    def test_preserves_remote_order(self, make_record, make_relation):
        record = make_record(doi="10.1234/abc")
        rels = [make_relation(doi=f"10.5555/r{i}") for i in range(5)]
        matches = MatchResolver(Hasher()).resolve(record, rels)
        assert [m.relation.doi for m in matches] == [r.doi for r in rels]

    def test_group_by_kind(self, make_record, make_relation):
        record = make_record()
        rels = [
            make_relation(doi="10.5555/a"),
            make_relation(kind=RelationKind.ORIGINAL, doi="10.5555/b"),
            make_relation(kind=RelationKind.REPRODUCTION, doi=None, url="https://osf.io/x"),
            make_relation(doi="10.5555/c"),
        ]
        grouped = MatchResolver.group(MatchResolver().resolve(record, rels))
        assert [r.doi for r in grouped[RelationKind.REPLICATION]] == ["10.5555/a", "10.5555/c"]
        assert [r.doi for r in grouped[RelationKind.ORIGINAL]] == ["10.5555/b"]
        assert len(grouped[RelationKind.REPRODUCTION]) == 1
