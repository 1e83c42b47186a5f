"""Tests for reading records from BibTeX files."""

from __future__ import annotations

from replication_checker import BibLoader, load_bib_records
from replication_checker.bibfile import entry_doi, records_from_entries

SAMPLE_BIB = r"""
@article{smith2020,
  title = {Ego Depletion: {A} Replication},
  author = {Smith, John},
  journal = {Psychological Science},
  year = {2020},
  doi = {10.1177/0956797620000000}
}

@article{doe2019,
  title = {Power Posing},
  author = {Doe, Jane},
  year = {2019},
  url = {https://doi.org/10.1037/xge0000001}
}

@book{nodoi2018,
  title = {A Book Without Identifiers},
  author = {Brown, Bob},
  year = {2018}
}
"""


class TestEntryDoi:
    def test_doi_field(self, make_entry):
        assert entry_doi(make_entry(doi=" 10.1234/abc ")) == "10.1234/abc"

    def test_doi_url(self, make_entry):
        assert entry_doi(make_entry(url="http://dx.doi.org/10.1234/abc")) == "10.1234/abc"

    def test_other_url_ignored(self, make_entry):
        assert entry_doi(make_entry(url="https://arxiv.org/abs/2001.01234")) is None


class TestLoadBibRecords:
    def test_loads_entries_with_doi(self, tmp_path):
        path = tmp_path / "refs.bib"
        path.write_text(SAMPLE_BIB, encoding="utf-8")

        records = load_bib_records(str(path))

        assert [(r.local_id, r.doi) for r in records] == [
            ("smith2020", "10.1177/0956797620000000"),
            ("doe2019", "10.1037/xge0000001"),
        ]
        assert records[0].title == "Ego Depletion: A Replication"

    def test_loads_from_string(self):
        db = BibLoader().loads(SAMPLE_BIB)
        assert len(records_from_entries(db.entries)) == 2
