"""Persistent blacklist of relations the user does not want re-surfaced.

Suppression is keyed by the relation's identity, never by the record it was
attached to: banning a replication hides it for every record in the library.
The identity is the relation's DOI, or its URL when it has no DOI (some
reproduction entries). Relations with neither cannot be suppressed.
"""

from __future__ import annotations

import datetime
import json
import logging
import os
import tempfile
import threading
from collections.abc import Iterable
from typing import Union

from replication_checker.errors import SuppressionStoreUnavailable
from replication_checker.hashing import is_plausible_doi, normalize
from replication_checker.models import CandidateRelation, RelationKind, RelationRef, SuppressionEntry

SCHEMA_VERSION = 2

RelationLike = Union[CandidateRelation, RelationRef]

logger = logging.getLogger(__name__)


def normalize_url(url: str | None) -> str | None:
    """Lowercase, trim and drop trailing slashes."""
    if not url:
        return None
    u = url.strip().lower().rstrip("/")
    return u or None


def doi_identity(doi: str | None) -> str | None:
    if not is_plausible_doi(doi):
        return None
    return f"doi:{normalize(doi)}"


def url_identity(url: str | None) -> str | None:
    u = normalize_url(url)
    return f"url:{u}" if u else None


def relation_identity(relation: RelationLike) -> str | None:
    """Identity used to suppress a relation: DOI first, URL as fallback."""
    return doi_identity(relation.doi) or url_identity(relation.url)


def _utcnow() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


def _is_legacy_entry(raw: dict) -> bool:
    """Entries written by the Zotero add-on: no identity, ``type``/``dateAdded`` fields."""
    return "identity" not in raw and ("dateAdded" in raw or "type" in raw)


class SuppressionStore:
    """Thread-safe JSON-backed suppression store.

    The file holds ``{"schemaVersion": 2, "entries": [...]}`` and is rewritten
    atomically on every change. A missing, unreadable or corrupt file is
    treated as an empty store.
    """

    def __init__(self, path: str | None = None) -> None:
        """Initialize and load the store.

        Args:
            path: JSON file to persist to. If None, the store lives in memory.
        """
        self.path = os.path.expanduser(path) if path else None
        self.lock = threading.Lock()
        self._entries: dict[str, SuppressionEntry] = {}
        self._url_index: dict[str, str] = {}
        self._load()
        self._rebuild_index()

    # ------------- Persistence -------------

    def _load(self) -> None:
        if not self.path or not os.path.exists(self.path):
            return
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
            self._entries = self._parse(data)
        except (OSError, ValueError, TypeError, KeyError, AttributeError) as e:
            logger.warning(f"Suppression store {self.path} is unreadable, starting empty: {e}")
            self._entries = {}
            return
        logger.debug(f"Loaded {len(self._entries)} suppression entries from {self.path}")

    def _parse(self, data: object) -> dict[str, SuppressionEntry]:
        """Build entries from file content, migrating older schema versions."""
        if not isinstance(data, dict):
            raise ValueError("expected a JSON object")
        version = data.get("schemaVersion", data.get("version"))
        if not isinstance(version, int):
            raise ValueError("schemaVersion is not a number")
        if version > SCHEMA_VERSION:
            raise ValueError(f"unsupported schemaVersion {version}")
        raw_entries = data.get("entries")
        if not isinstance(raw_entries, list):
            raise ValueError("entries is not a list")

        entries: dict[str, SuppressionEntry] = {}
        for raw in raw_entries:
            if version < 2 or _is_legacy_entry(raw):
                raw = self._migrate_v1(raw)
            ref = RelationRef(kind=RelationKind.REPLICATION, doi=raw.get("doi"), url=raw.get("url"))
            identity = raw.get("identity") or relation_identity(ref)
            if not identity:
                continue
            entries[identity] = SuppressionEntry(
                identity=identity,
                kind=RelationKind(raw.get("kind") or RelationKind.REPLICATION.value),
                banned_at=raw.get("banned_at") or _utcnow(),
                reason=raw.get("reason") or "manual",
                title=raw.get("title"),
                doi=raw.get("doi") or None,
                url=raw.get("url") or None,
                original_title=raw.get("original_title"),
            )
        return entries

    @staticmethod
    def _migrate_v1(raw: dict) -> dict:
        """Legacy entries had ``type``/``dateAdded``/``originalTitle`` and no identity."""
        return {
            "kind": raw.get("type") or RelationKind.REPLICATION.value,
            "banned_at": raw.get("dateAdded"),
            "reason": raw.get("reason"),
            "title": raw.get("title"),
            "doi": raw.get("doi"),
            "url": raw.get("url"),
            "original_title": raw.get("originalTitle"),
        }

    def _commit(self, entries: dict[str, SuppressionEntry]) -> None:
        """Persist ``entries`` and make them current. Caller holds the lock.

        The in-memory state is left untouched if the write fails.
        """
        self._save(entries)
        self._entries = entries
        self._rebuild_index()

    def _save(self, entries: dict[str, SuppressionEntry]) -> None:
        """Write entries atomically."""
        if not self.path:
            return
        payload = {
            "schemaVersion": SCHEMA_VERSION,
            "entries": [e.to_dict() for e in entries.values()],
        }
        directory = os.path.dirname(os.path.abspath(self.path))
        try:
            os.makedirs(directory, exist_ok=True)
            tmp = tempfile.NamedTemporaryFile(
                "w", delete=False, encoding="utf-8", suffix=".json", prefix=".tmp_blacklist_", dir=directory
            )
            try:
                json.dump(payload, tmp, indent=2)
                tmp.flush()
                os.fsync(tmp.fileno())
            finally:
                tmp.close()
            os.replace(tmp.name, self.path)
        except OSError as e:
            raise SuppressionStoreUnavailable(f"Failed to write suppression store {self.path}: {e}") from e

    def _rebuild_index(self) -> None:
        """Index stored URLs so a DOI-keyed ban also matches by URL. Caller holds the lock."""
        self._url_index = {}
        for identity, entry in self._entries.items():
            key = url_identity(entry.url)
            if key:
                self._url_index[key] = identity

    # ------------- Queries -------------

    def is_suppressed(self, relation: RelationLike) -> bool:
        """True if the relation's DOI or URL has been banned."""
        doi_key = doi_identity(relation.doi)
        url_key = url_identity(relation.url)
        with self.lock:
            if doi_key and doi_key in self._entries:
                return True
            return bool(url_key) and (url_key in self._entries or url_key in self._url_index)

    def list(self) -> list[SuppressionEntry]:
        """All entries, oldest ban first."""
        with self.lock:
            return sorted(self._entries.values(), key=lambda e: e.banned_at)

    def __len__(self) -> int:
        with self.lock:
            return len(self._entries)

    def __contains__(self, identity: str) -> bool:
        with self.lock:
            return identity in self._entries

    # ------------- Mutations -------------

    def add(
        self,
        relation: RelationLike,
        reason: str = "manual",
        original_title: str | None = None,
    ) -> SuppressionEntry | None:
        """Ban a relation, or refresh the ban if it already exists.

        Args:
            relation: The relation to suppress
            reason: "manual" (user ban) or "deletion" (user deleted the added item)
            original_title: Title of the record the relation was shown on

        Returns:
            The stored entry, or None if the relation has neither DOI nor URL
        """
        identity = relation_identity(relation)
        if identity is None:
            logger.debug(f"Cannot suppress relation without DOI or URL: {relation.title!r}")
            return None

        with self.lock:
            previous = self._entries.get(identity)
            entry = SuppressionEntry(
                identity=identity,
                kind=relation.kind,
                banned_at=_utcnow(),
                reason=reason,
                title=relation.title or (previous.title if previous else None),
                doi=relation.doi or (previous.doi if previous else None),
                url=relation.url or (previous.url if previous else None),
                original_title=original_title or (previous.original_title if previous else None),
            )
            self._commit({**self._entries, identity: entry})
        logger.debug(f"Suppressed {identity} ({reason})")
        return entry

    def remove(self, identities: Iterable[str]) -> int:
        """Lift bans by DOI, URL or stored identity string.

        Returns:
            Number of entries removed
        """
        keys: set[str] = set()
        for ident in identities:
            if ident.startswith(("doi:", "url:")):
                keys.add(ident)
            for key in (doi_identity(ident), url_identity(ident)):
                if key:
                    keys.add(key)

        with self.lock:
            targets = {k for k in keys if k in self._entries}
            targets.update(self._url_index[k] for k in keys if k in self._url_index)
            if targets:
                self._commit({k: e for k, e in self._entries.items() if k not in targets})
        return len(targets)

    def clear(self) -> int:
        """Remove every entry. Returns the number removed."""
        with self.lock:
            count = len(self._entries)
            self._commit({})
        return count
