"""Replication Checker - Find replications and reproductions of the papers in your library.

This package provides tools for:
- Looking up DOIs in the FORRT Replication Database without revealing them
  (only short digest prefixes are sent, matching happens locally)
- Tagging and annotating matched Zotero items
- Keeping a blacklist of related studies the user does not want to see

Example usage:
    from replication_checker import BatchOrchestrator, RemoteIndexClient, SourceRecord

    records = [SourceRecord(local_id="smith2020", doi="10.1234/abc")]
    async with RemoteIndexClient() as client:
        result = await BatchOrchestrator(client).run(records)

    for record_result in result.with_matches:
        print(record_result.local_id, record_result.replications)
"""

from replication_checker._version import __version__
from replication_checker.bibfile import BibLoader, load_bib_records
from replication_checker.checker import ReplicationChecker, print_check_summary
from replication_checker.client import RemoteIndexClient, parse_prefix_response
from replication_checker.config import CheckerConfig
from replication_checker.errors import (
    InvalidInput,
    LookupFailed,
    ReplicationCheckerError,
    SuppressionStoreUnavailable,
)
from replication_checker.hashing import DEFAULT_SCHEME, Hasher, HashScheme, digest, is_plausible_doi, normalize, prefix
from replication_checker.materializer import MaterializeOutcome, ResultMaterializer, tags_for
from replication_checker.models import (
    Author,
    BatchResult,
    CandidateRelation,
    RecordResult,
    RelationKind,
    RelationRef,
    ResolvedMatch,
    SourceRecord,
    SuppressionEntry,
)
from replication_checker.orchestrator import BatchOrchestrator
from replication_checker.resolver import MatchResolver
from replication_checker.suppression import SuppressionStore, relation_identity
from replication_checker.zotero import ZoteroLibrary

__all__ = [
    # Version
    "__version__",
    # Engine
    "BatchOrchestrator",
    "Hasher",
    "HashScheme",
    "DEFAULT_SCHEME",
    "MatchResolver",
    "RemoteIndexClient",
    "SuppressionStore",
    # Data model
    "Author",
    "BatchResult",
    "CandidateRelation",
    "RecordResult",
    "RelationKind",
    "RelationRef",
    "ResolvedMatch",
    "SourceRecord",
    "SuppressionEntry",
    # Errors
    "InvalidInput",
    "LookupFailed",
    "ReplicationCheckerError",
    "SuppressionStoreUnavailable",
    # Adapters
    "BibLoader",
    "MaterializeOutcome",
    "ResultMaterializer",
    "ZoteroLibrary",
    "load_bib_records",
    "tags_for",
    # Facade
    "CheckerConfig",
    "ReplicationChecker",
    "print_check_summary",
    # DOI utilities
    "digest",
    "is_plausible_doi",
    "normalize",
    "prefix",
    "parse_prefix_response",
    "relation_identity",
]
