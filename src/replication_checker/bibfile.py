"""Read records to check from a BibTeX file."""

from __future__ import annotations

import logging
import re

import bibtexparser
from bibtexparser.bparser import BibTexParser

from replication_checker.models import SourceRecord

logger = logging.getLogger(__name__)

_DOI_URL_RE = re.compile(r"^https?://(?:dx\.)?doi\.org/(10\..+)$", re.IGNORECASE)


class BibLoader:
    def __init__(self) -> None:
        self.parser = BibTexParser(common_strings=True)
        self.parser.customization = None

    def load_file(self, path: str) -> bibtexparser.bibdatabase.BibDatabase:
        with open(path, encoding="utf-8") as f:
            return bibtexparser.load(f, parser=self.parser)

    def loads(self, text: str) -> bibtexparser.bibdatabase.BibDatabase:
        return bibtexparser.loads(text, parser=self.parser)


def entry_doi(entry: dict[str, str]) -> str | None:
    """DOI of a BibTeX entry, from ``doi`` or a doi.org ``url``."""
    doi = (entry.get("doi") or "").strip()
    if doi:
        return doi
    m = _DOI_URL_RE.match((entry.get("url") or "").strip())
    return m.group(1) if m else None


def entry_title(entry: dict[str, str]) -> str | None:
    title = (entry.get("title") or "").replace("{", "").replace("}", "").strip()
    return title or None


def records_from_entries(entries: list[dict[str, str]]) -> list[SourceRecord]:
    """Convert parsed entries to records; entries without a DOI are dropped."""
    records = []
    for entry in entries:
        doi = entry_doi(entry)
        if not doi:
            continue
        records.append(SourceRecord(local_id=entry.get("ID", ""), doi=doi, title=entry_title(entry)))
    return records


def load_bib_records(path: str) -> list[SourceRecord]:
    db = BibLoader().load_file(path)
    records = records_from_entries(db.entries)
    logger.info(f"Loaded {len(db.entries)} entries from {path}, {len(records)} with a DOI")
    return records
