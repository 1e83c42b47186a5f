#!/usr/bin/env python3
"""Check a reference library for replications and reproductions.

Looks up every DOI of a Zotero library (or a .bib file) in the FORRT
Replication Database without revealing the DOIs: only 3-character digest
prefixes are sent, and matching happens locally. Matches are written back
to Zotero as tags, notes and (optionally) linked items.

Usage:
    # Check the whole Zotero library (dry run)
    replication-check --dry-run

    # Check one collection and add related studies as items
    replication-check --collection ABCD1234 --related-items

    # Check a BibTeX file and print JSON
    replication-check --bib references.bib --json

    # Manage the blacklist
    replication-blacklist --list
    replication-blacklist --remove 10.1234/abc

Environment variables:
    ZOTERO_LIBRARY_ID             - Your Zotero user ID
    ZOTERO_API_KEY                - API key with write permissions
    REPLICATION_CHECKER_ENDPOINT  - Override the prefix-lookup URL
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Sequence
from typing import Any

from replication_checker.bibfile import load_bib_records
from replication_checker.client import RemoteIndexClient
from replication_checker.config import CheckerConfig
from replication_checker.errors import LookupFailed, SuppressionStoreUnavailable
from replication_checker.hashing import Hasher, HashScheme
from replication_checker.materializer import MaterializeOutcome
from replication_checker.models import BatchResult, CandidateRelation, RecordResult, SourceRecord, SuppressionEntry
from replication_checker.orchestrator import BatchOrchestrator
from replication_checker.suppression import SuppressionStore
from replication_checker.zotero import ZoteroLibrary

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_LOOKUP_FAILED = 2

CREDENTIALS_HELP = (
    "Error: ZOTERO_LIBRARY_ID and ZOTERO_API_KEY required\n"
    "  Set environment variables or use --library-id and --api-key\n"
    "  Get your library ID and create an API key at: https://www.zotero.org/settings/keys"
)


class ReplicationChecker:
    """Wires configuration, remote client, suppression store and Zotero together."""

    def __init__(
        self,
        config: CheckerConfig,
        client: RemoteIndexClient | None = None,
        store: SuppressionStore | None = None,
        library: ZoteroLibrary | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self.hasher = Hasher(HashScheme(prefix_length=config.prefix_length))
        self._client = client
        self.store = store if store is not None else SuppressionStore(config.blacklist_path)
        self._library = library

    @property
    def library(self) -> ZoteroLibrary:
        """Lazily build the Zotero adapter from the configured credentials."""
        if self._library is None:
            if not self.config.library_id or not self.config.api_key:
                raise ValueError("library_id and api_key are required for Zotero access")
            self._library = ZoteroLibrary(
                library_id=self.config.library_id,
                api_key=self.config.api_key,
                library_type=self.config.library_type,
                create_notes=self.config.create_notes,
                create_related_items=self.config.create_related_items,
                folder_name=self.config.folder_name,
                dry_run=self.config.dry_run,
                logger=self.logger,
            )
        return self._library

    def _make_client(self) -> RemoteIndexClient:
        return RemoteIndexClient(
            endpoint=self.config.endpoint,
            timeout=self.config.timeout,
            user_agent=self.config.user_agent,
            hasher=self.hasher,
        )

    async def check(self, records: Sequence[SourceRecord]) -> BatchResult:
        """Run the lookup for ``records``.

        Raises:
            LookupFailed: If the remote index could not be queried
        """
        client = self._client or self._make_client()
        try:
            orchestrator = BatchOrchestrator(
                client,
                suppression=self.store,
                hasher=self.hasher,
                max_batch_size=self.config.batch_size,
                retries=self.config.retries,
                retry_backoff=self.config.retry_backoff,
                logger=self.logger,
            )
            return await orchestrator.run(records)
        finally:
            if self._client is None:
                await client.close()

    def check_sync(self, records: Sequence[SourceRecord]) -> BatchResult:
        return asyncio.run(self.check(records))

    def zotero_records(self, limit: int | None = None) -> list[SourceRecord]:
        return self.library.list_records_with_doi(
            collection=self.config.collection,
            tag=self.config.tag,
            limit=limit,
        )

    def apply(self, batch: BatchResult) -> list[MaterializeOutcome]:
        return self.library.apply_all(batch.results)

    def ban_deleted(self, item_key: str) -> SuppressionEntry | None:
        """Suppress the relation behind a checker-added item the user deleted."""
        ref = self.library.on_record_deleted(item_key)
        if ref is None:
            self.logger.info(f"Item {item_key} was not added by the checker, nothing to ban")
            return None
        return self.store.add(ref, reason="deletion")


# ------------- Output -------------


def relation_to_dict(relation: CandidateRelation) -> dict[str, Any]:
    return {
        "kind": relation.kind.value,
        "doi": relation.doi,
        "title": relation.title,
        "authors": [{"given": a.given, "family": a.family} for a in relation.authors],
        "journal": relation.journal,
        "year": relation.year,
        "outcome": relation.outcome,
        "outcome_quote": relation.outcome_quote,
        "url": relation.url,
    }


def record_result_to_dict(result: RecordResult) -> dict[str, Any]:
    return {
        "local_id": result.local_id,
        "doi": result.doi,
        "replications": [relation_to_dict(r) for r in result.replications],
        "originals": [relation_to_dict(r) for r in result.originals],
        "reproductions": [relation_to_dict(r) for r in result.reproductions],
    }


def batch_result_to_dict(batch: BatchResult) -> dict[str, Any]:
    return {
        "records_checked": batch.records_checked,
        "records_with_matches": batch.records_with_matches,
        "total_dois_found": batch.total_dois_found,
        "unique_prefixes_queried": batch.unique_prefixes_queried,
        "suppressed_matches": batch.suppressed_matches,
        "skipped": list(batch.skipped),
        "results": [record_result_to_dict(r) for r in batch.with_matches],
    }


def print_check_summary(
    batch: BatchResult,
    outcomes: Sequence[MaterializeOutcome] = (),
    titles: dict[str, str] | None = None,
    logger: logging.Logger | None = None,
) -> None:
    """Log a summary banner of a check run."""
    log = logger or logging.getLogger(__name__)
    titles = titles or {}
    errors = [o for o in outcomes if o.action == "error"]
    updated = [o for o in outcomes if o.action in ("updated", "would_update")]

    log.info("")
    log.info("=" * 50)
    log.info("Replication Check Summary")
    log.info("=" * 50)
    log.info(f"Records checked:       {batch.records_checked}")
    log.info(f"Skipped (no DOI):      {len(batch.skipped)}")
    log.info(f"Unique prefixes sent:  {batch.unique_prefixes_queried}")
    log.info(f"Records with matches:  {batch.records_with_matches}")
    if batch.suppressed_matches:
        log.info(f"Hidden by blacklist:   {batch.suppressed_matches}")
    if outcomes:
        log.info(f"Items updated:         {len(updated)}")
        log.info(f"Errors:                {len(errors)}")

    for result in batch.with_matches:
        label = titles.get(result.local_id) or result.doi
        log.info(f"  [{result.local_id}] {label}")
        for relation in result.matches:
            outcome = f" ({relation.outcome})" if relation.outcome else ""
            log.info(f"    {relation.kind.value}: {relation.title or relation.doi or relation.url}{outcome}")

    for o in errors:
        log.info(f"  Error [{o.local_id}]: {o.message}")


# ------------- CLI -------------


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")


def _load_config(args: argparse.Namespace) -> CheckerConfig:
    config = CheckerConfig.from_yaml(args.config) if args.config else CheckerConfig()
    config.apply_env()
    overrides = {
        "endpoint": getattr(args, "endpoint", None),
        "batch_size": getattr(args, "batch_size", None),
        "timeout": getattr(args, "timeout", None),
        "blacklist_path": getattr(args, "blacklist", None),
        "collection": getattr(args, "collection", None),
        "tag": getattr(args, "tag", None),
        "library_id": getattr(args, "library_id", None),
        "api_key": getattr(args, "api_key", None),
        "library_type": getattr(args, "library_type", None),
    }
    for key, value in overrides.items():
        if value is not None:
            setattr(config, key, value)
    if getattr(args, "no_notes", False):
        config.create_notes = False
    if getattr(args, "related_items", False):
        config.create_related_items = True
    if getattr(args, "dry_run", False):
        config.dry_run = True
    if getattr(args, "verbose", False):
        config.verbose = True
    return config


def _add_zotero_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--library-id", help="Zotero library ID (or set ZOTERO_LIBRARY_ID)")
    parser.add_argument("--api-key", help="Zotero API key (or set ZOTERO_API_KEY)")
    parser.add_argument("--library-type", choices=["user", "group"], help="Library type (default: user)")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Check a Zotero library or .bib file for replications and reproductions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--bib", help="Check a BibTeX file instead of Zotero (read-only)")
    parser.add_argument("--collection", help="Only check items in this collection (key)")
    parser.add_argument("--tag", help="Only check items with this tag")
    parser.add_argument("--limit", type=int, help="Max items to fetch from Zotero")
    parser.add_argument("--config", help="YAML config file")
    parser.add_argument("--endpoint", help="Prefix-lookup URL")
    parser.add_argument("--batch-size", type=int, help="Max prefixes per request (default: 500)")
    parser.add_argument("--timeout", type=float, help="Request timeout in seconds")
    parser.add_argument("--blacklist", help="Blacklist JSON file")
    parser.add_argument("--no-notes", action="store_true", help="Do not write notes")
    parser.add_argument("--related-items", action="store_true", help="Add related studies as linked items")
    parser.add_argument("--dry-run", action="store_true", help="Preview changes without applying")
    parser.add_argument("--json", action="store_true", help="Print results as JSON")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    _add_zotero_args(parser)

    args = parser.parse_args(argv)
    try:
        config = _load_config(args)
    except (OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR

    _configure_logging(config.verbose)
    logger = logging.getLogger("replication_checker")
    checker = ReplicationChecker(config, logger=logger)

    if args.bib:
        try:
            records = load_bib_records(args.bib)
        except OSError as e:
            print(f"Error: {e}", file=sys.stderr)
            return EXIT_ERROR
    else:
        if not config.library_id or not config.api_key:
            print(CREDENTIALS_HELP, file=sys.stderr)
            return EXIT_ERROR
        records = checker.zotero_records(limit=args.limit)

    try:
        batch = checker.check_sync(records)
    except LookupFailed as e:
        logger.error(f"Could not check for replications: {e}")
        if e.unprocessed:
            logger.error(f"{len(e.unprocessed)} record(s) were not checked")
        return EXIT_LOOKUP_FAILED

    outcomes: list[MaterializeOutcome] = []
    if not args.bib:
        outcomes = checker.apply(batch)

    if args.json:
        print(json.dumps(batch_result_to_dict(batch), indent=2))
    else:
        titles = {r.local_id: r.title for r in records if r.title}
        print_check_summary(batch, outcomes, titles, logger)

    return EXIT_ERROR if any(o.action == "error" for o in outcomes) else EXIT_OK


def blacklist_main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Manage relations hidden from replication checks")
    action = parser.add_mutually_exclusive_group()
    action.add_argument("--list", action="store_true", help="List blacklisted relations (default)")
    action.add_argument("--remove", nargs="+", metavar="ID", help="Unban by DOI, URL or identity")
    action.add_argument("--clear", action="store_true", help="Remove every entry")
    action.add_argument("--ban-deleted", metavar="ITEM_KEY", help="Ban the relation of a deleted checker item")
    parser.add_argument("--blacklist", help="Blacklist JSON file")
    parser.add_argument("--config", help="YAML config file")
    parser.add_argument("--json", action="store_true", help="Print entries as JSON")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    _add_zotero_args(parser)

    args = parser.parse_args(argv)
    try:
        config = _load_config(args)
    except (OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_ERROR

    _configure_logging(config.verbose)
    logger = logging.getLogger("replication_checker")
    store = SuppressionStore(config.blacklist_path)

    try:
        if args.remove:
            removed = store.remove(args.remove)
            logger.info(f"Removed {removed} entr{'y' if removed == 1 else 'ies'}")
            return EXIT_OK if removed else EXIT_ERROR
        if args.clear:
            logger.info(f"Removed {store.clear()} entries")
            return EXIT_OK
        if args.ban_deleted:
            if not config.library_id or not config.api_key:
                print(CREDENTIALS_HELP, file=sys.stderr)
                return EXIT_ERROR
            checker = ReplicationChecker(config, store=store, logger=logger)
            entry = checker.ban_deleted(args.ban_deleted)
            if entry is None:
                return EXIT_ERROR
            logger.info(f"Banned {entry.identity}")
            return EXIT_OK
    except SuppressionStoreUnavailable as e:
        logger.error(str(e))
        return EXIT_ERROR

    entries = store.list()
    if args.json:
        print(json.dumps([e.to_dict() for e in entries], indent=2))
        return EXIT_OK
    if not entries:
        logger.info("Blacklist is empty")
    for e in entries:
        logger.info(f"{e.identity}  [{e.kind.value}, {e.reason}, {e.banned_at}]  {e.title or ''}")
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
