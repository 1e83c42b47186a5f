"""Zotero adapter: reads records to check and writes match side effects.

Uses the Zotero Web API through pyzotero. All writes diff against the
current state of the library, so re-applying the same result is a no-op:
tags are only added when missing, the checker's notes are extended with
studies they do not list yet, and relation links are only added once.

Environment variables:
    ZOTERO_LIBRARY_ID - Your Zotero user ID (find at zotero.org/settings/keys)
    ZOTERO_API_KEY    - API key with write permissions
"""

from __future__ import annotations

import logging
import re
from typing import Any

from replication_checker.hashing import normalize
from replication_checker.materializer import (
    RELATED_ITEM_TAGS,
    TAG_ADDED_BY_CHECKER,
    MaterializeOutcome,
    ResultMaterializer,
    dedupe_relations,
    extend_note,
    is_checker_note,
    render_note,
    tags_for,
)
from replication_checker.models import CandidateRelation, RecordResult, RelationKind, RelationRef, SourceRecord
from replication_checker.suppression import url_identity

_EXTRA_DOI_RE = re.compile(r"^\s*DOI:\s*(\S+)", re.IGNORECASE | re.MULTILINE)

SKIPPED_ITEM_TYPES = ("attachment", "note", "annotation")


def version_conflict_error() -> type[Exception]:
    """Exception pyzotero raises on HTTP 412 (stale item version).

    Named ``PreConditionFailedError`` in current pyzotero and
    ``PreConditionFailed`` in releases before 1.6.
    """
    try:
        from pyzotero import zotero_errors
    except ImportError as e:
        raise ImportError("pyzotero not installed. Run: pip install pyzotero") from e

    error = getattr(zotero_errors, "PreConditionFailedError", None) or getattr(zotero_errors, "PreConditionFailed")
    return error


def extract_doi(item: dict[str, Any]) -> str | None:
    """DOI of a Zotero item, from the DOI field or a ``DOI:`` line in Extra."""
    data = item.get("data", item)
    doi = (data.get("DOI") or "").strip()
    if doi:
        return doi
    m = _EXTRA_DOI_RE.search(data.get("extra") or "")
    return m.group(1) if m else None


def item_tags(item: dict[str, Any]) -> list[str]:
    data = item.get("data", item)
    return [t.get("tag", "") for t in data.get("tags", [])]


def item_relations(item: dict[str, Any]) -> list[str]:
    """URIs in an item's ``dc:relation`` (a string or a list in the API)."""
    data = item.get("data", item)
    rel = (data.get("relations") or {}).get("dc:relation", [])
    if isinstance(rel, str):
        return [rel]
    return list(rel)


def relation_to_zotero_item(
    relation: CandidateRelation,
    collection_key: str | None,
    related_uri: str,
) -> dict[str, Any]:
    """Build a journalArticle payload for a related study the library lacks."""
    extra_lines = [f"Relation: {relation.kind.value}"]
    if relation.outcome:
        label = "Reproduction Outcome" if relation.kind is RelationKind.REPRODUCTION else "Outcome"
        extra_lines.append(f"{label}: {relation.outcome}")
    if relation.outcome_quote:
        extra_lines.append(f"Outcome Quote: {relation.outcome_quote}")

    return {
        "itemType": "journalArticle",
        "title": relation.title or "",
        "creators": [
            {"creatorType": "author", "firstName": a.given, "lastName": a.family} for a in relation.authors
        ],
        "publicationTitle": relation.journal or "",
        "date": str(relation.year) if relation.year else "",
        "volume": relation.volume or "",
        "issue": relation.issue or "",
        "pages": relation.pages or "",
        "DOI": relation.doi or "",
        "url": relation.url or "",
        "extra": "\n".join(extra_lines),
        "tags": [{"tag": TAG_ADDED_BY_CHECKER}, {"tag": RELATED_ITEM_TAGS[relation.kind]}],
        "collections": [collection_key] if collection_key else [],
        "relations": {"dc:relation": [related_uri]},
    }


class ZoteroLibrary(ResultMaterializer):
    """Host collaborator backed by a Zotero library.

    Provides the records to check, applies match side effects, and reports
    which relation to suppress when the user deletes an item the checker added.
    """

    def __init__(
        self,
        library_id: str,
        api_key: str,
        library_type: str = "user",
        create_notes: bool = True,
        create_related_items: bool = False,
        folder_name: str = "Replication folder",
        dry_run: bool = False,
        zot: Any | None = None,
        logger: logging.Logger | None = None,
    ):
        """Initialize the adapter.

        Args:
            library_id: Zotero library ID (user ID or group ID)
            api_key: Zotero API key with write permissions
            library_type: "user" or "group"
            create_notes: Write a child note listing the related studies
            create_related_items: Add related studies as items and link them
            folder_name: Collection receiving the related items
            dry_run: If True, report changes without writing
            zot: Pre-built pyzotero client (created lazily otherwise)
            logger: Logger instance (creates one if not provided)
        """
        self.library_id = library_id
        self.api_key = api_key
        self.library_type = library_type
        self.create_notes = create_notes
        self.create_related_items = create_related_items
        self.folder_name = folder_name
        self.dry_run = dry_run
        self.logger = logger or logging.getLogger(__name__)
        self._zot = zot
        self._folder_key: str | None = None
        self._checker_items: dict[str, dict[str, Any]] | None = None

    @property
    def zot(self):
        """Lazy-load pyzotero client."""
        if self._zot is None:
            try:
                from pyzotero import zotero

                self._zot = zotero.Zotero(self.library_id, self.library_type, self.api_key)
            except ImportError as e:
                raise ImportError("pyzotero not installed. Run: pip install pyzotero") from e
        return self._zot

    def item_uri(self, item_key: str) -> str:
        prefix = "groups" if self.library_type == "group" else "users"
        return f"http://zotero.org/{prefix}/{self.library_id}/items/{item_key}"

    # ------------- Reading -------------

    def list_records_with_doi(
        self,
        collection: str | None = None,
        tag: str | None = None,
        limit: int | None = None,
    ) -> list[SourceRecord]:
        """Regular top-level items that carry a DOI.

        Args:
            collection: Only items in this collection (key)
            tag: Only items with this tag
            limit: Maximum items to fetch (all items if None)
        """
        params: dict[str, Any] = {}
        if tag:
            params["tag"] = tag
        if limit:
            params["limit"] = limit

        if collection:
            items = self.zot.collection_items_top(collection, **params)
        else:
            items = self.zot.top(**params)
        if not limit:
            items = self.zot.everything(items)

        records = []
        for item in items:
            data = item.get("data", item)
            if data.get("itemType") in SKIPPED_ITEM_TYPES:
                continue
            doi = extract_doi(item)
            if doi:
                records.append(SourceRecord(local_id=data["key"], doi=doi, title=data.get("title")))

        self.logger.info(f"Found {len(records)} item(s) with DOIs out of {len(items)} items")
        return records

    def relation_ref(self, item: dict[str, Any]) -> RelationRef | None:
        """Identity of a related-study item the checker added, else None."""
        tags = item_tags(item)
        if TAG_ADDED_BY_CHECKER not in tags:
            return None
        kind = RelationKind.REPLICATION
        for k, tag in RELATED_ITEM_TAGS.items():
            if tag in tags:
                kind = k
                break
        data = item.get("data", item)
        doi = extract_doi(item)
        url = (data.get("url") or "").strip() or None
        if not doi and not url:
            return None
        return RelationRef(kind=kind, doi=doi, url=url, title=data.get("title"))

    def on_record_deleted(self, item_key: str) -> RelationRef | None:
        """Relation to suppress because the user deleted ``item_key``.

        Only items added by the checker count; deleting one of the user's own
        items never bans anything.
        """
        item = self.zot.item(item_key)
        return self.relation_ref(item)

    # ------------- Writing -------------

    def _update_item_with_retry(self, update_payload: dict[str, Any]) -> None:
        """Update item with retry on version conflict."""
        try:
            self.zot.update_item(update_payload)
        except version_conflict_error():
            # Refresh version and retry once
            fresh = self.zot.item(update_payload["key"])
            update_payload["version"] = fresh["data"]["version"]
            self.zot.update_item(update_payload)

    def folder_key(self) -> str | None:
        """Key of the collection for related items, created on first use."""
        if self._folder_key:
            return self._folder_key
        for coll in self.zot.everything(self.zot.collections()):
            data = coll.get("data", coll)
            if data.get("name") == self.folder_name and not data.get("parentCollection"):
                self._folder_key = data["key"]
                return self._folder_key
        if self.dry_run:
            return None
        resp = self.zot.create_collections([{"name": self.folder_name}])
        created = resp.get("successful") or {}
        if not created:
            raise RuntimeError(f"Failed to create collection: {resp.get('failed')}")
        first = next(iter(created.values()))
        self._folder_key = first.get("key") or first.get("data", {}).get("key")
        return self._folder_key

    def find_item_by_doi(self, doi: str) -> dict[str, Any] | None:
        target = normalize(doi)
        for item in self.zot.items(q=doi, qmode="everything"):
            found = extract_doi(item)
            if found and normalize(found) == target:
                return item
        return None

    def checker_items_by_url(self) -> dict[str, dict[str, Any]]:
        """Items the checker added, keyed by URL identity. Loaded once per adapter."""
        if self._checker_items is None:
            self._checker_items = {}
            for item in self.zot.everything(self.zot.items(tag=TAG_ADDED_BY_CHECKER)):
                ident = url_identity(item.get("data", item).get("url"))
                if ident:
                    self._checker_items.setdefault(ident, item)
        return self._checker_items

    def find_related_item(self, relation: CandidateRelation) -> dict[str, Any] | None:
        """Existing library item for a related study: by DOI, else by URL among checker items."""
        if relation.doi:
            return self.find_item_by_doi(relation.doi)
        ident = url_identity(relation.url)
        if ident is None:
            return None
        return self.checker_items_by_url().get(ident)

    def _write_notes(self, item_key: str, result: RecordResult, outcome: MaterializeOutcome) -> None:
        notes = self.zot.children(item_key, itemType="note")
        for kind in RelationKind:
            relations = dedupe_relations(result.of_kind(kind))
            if not relations:
                continue
            existing = next((n for n in notes if is_checker_note(n["data"].get("note", ""), kind)), None)
            if existing is None:
                outcome.notes_written.append(kind)
                if not self.dry_run:
                    payload = {
                        "itemType": "note",
                        "parentItem": item_key,
                        "note": render_note(kind, relations),
                        "tags": [],
                    }
                    self.zot.create_items([payload])
                continue

            current = existing["data"].get("note", "")
            new_html, added = extend_note(current, relations)
            if "</ul>" not in current:
                # malformed note, overwrite
                new_html, added = render_note(kind, relations), len(relations)
            if added:
                outcome.notes_written.append(kind)
                if not self.dry_run:
                    self._update_item_with_retry(
                        {"key": existing["data"]["key"], "version": existing["data"]["version"], "note": new_html}
                    )

    def _link_related_items(self, item_key: str, result: RecordResult, outcome: MaterializeOutcome) -> list[str]:
        """Ensure every related study exists as an item linked both ways.

        Returns:
            URIs to add to the checked item's relations
        """
        own_uri = self.item_uri(item_key)
        uris: list[str] = []
        for rel in dedupe_relations(result.matches):
            existing = self.find_related_item(rel)
            if existing is None:
                if self.dry_run:
                    outcome.links_added += 2
                    continue
                payload = relation_to_zotero_item(rel, self.folder_key(), own_uri)
                resp = self.zot.create_items([payload])
                created = resp.get("successful") or {}
                if not created:
                    self.logger.warning(f"Failed to add related study {rel.title!r}: {resp.get('failed')}")
                    continue
                new_key = next(iter(created.values())).get("key")
                ident = None if rel.doi else url_identity(rel.url)
                if ident:
                    self.checker_items_by_url()[ident] = {"data": {**payload, "key": new_key, "version": 0}}
                outcome.related_items_added.append(new_key)
                outcome.links_added += 1
                uris.append(self.item_uri(new_key))
                continue

            data = existing.get("data", existing)
            if data["key"] == item_key:
                continue
            uris.append(self.item_uri(data["key"]))
            if own_uri not in item_relations(existing):
                outcome.links_added += 1
                if not self.dry_run:
                    relations = dict(data.get("relations") or {})
                    relations["dc:relation"] = item_relations(existing) + [own_uri]
                    self._update_item_with_retry(
                        {"key": data["key"], "version": data["version"], "relations": relations}
                    )
        return uris

    def apply(self, result: RecordResult) -> MaterializeOutcome:
        """Apply tags, notes and (optionally) related items for one record."""
        outcome = MaterializeOutcome(local_id=result.local_id, action="unchanged")
        if not result.has_matches:
            return outcome

        try:
            if self.create_notes:
                self._write_notes(result.local_id, result, outcome)
            new_uris = self._link_related_items(result.local_id, result, outcome) if self.create_related_items else []

            item = self.zot.item(result.local_id)
            data = item.get("data", item)
            present = item_tags(item)
            outcome.tags_added = [t for t in tags_for(result) if t not in present]
            existing_uris = item_relations(item)
            missing_uris = [u for u in new_uris if u not in existing_uris]

            if (outcome.tags_added or missing_uris) and not self.dry_run:
                payload: dict[str, Any] = {"key": data["key"], "version": data["version"]}
                if outcome.tags_added:
                    payload["tags"] = data.get("tags", []) + [{"tag": t} for t in outcome.tags_added]
                if missing_uris:
                    relations = dict(data.get("relations") or {})
                    relations["dc:relation"] = existing_uris + missing_uris
                    payload["relations"] = relations
                self._update_item_with_retry(payload)
            outcome.links_added += len(missing_uris)
        except Exception as e:
            self.logger.exception(f"Error updating Zotero item {result.local_id}")
            outcome.action = "error"
            outcome.message = str(e)
            return outcome

        changed = bool(outcome.tags_added or outcome.notes_written or outcome.related_items_added or outcome.links_added)
        if changed:
            outcome.action = "would_update" if self.dry_run else "updated"
        return outcome
