"""Configuration for the replication checker."""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

from replication_checker.client import DEFAULT_ENDPOINT, DEFAULT_USER_AGENT
from replication_checker.orchestrator import DEFAULT_BATCH_SIZE

DEFAULT_BLACKLIST_PATH = "~/.replication-checker/blacklist.json"


@dataclass
class CheckerConfig:
    """Configuration for a checker run.

    Attributes:
        endpoint: Prefix-lookup URL of the replication database
        timeout: Per-request timeout in seconds
        user_agent: User-Agent header sent with lookups
        batch_size: Maximum prefixes per lookup request
        prefix_length: Number of hex digits of the digest sent to the server
        retries: Extra attempts per failed lookup batch
        retry_backoff: Initial delay between attempts in seconds
        blacklist_path: JSON file holding suppressed relations
        library_id: Zotero library ID (user ID for personal libraries)
        api_key: Zotero API key with write permissions
        library_type: "user" or "group"
        collection: Only check items in this collection (key)
        tag: Only check items with this tag
        create_notes: Write a child note listing related studies
        create_related_items: Add related studies as linked items
        folder_name: Collection receiving added related items
        dry_run: Preview changes without modifying Zotero
        verbose: Enable verbose logging
    """

    endpoint: str = DEFAULT_ENDPOINT
    timeout: float = 30.0
    user_agent: str = DEFAULT_USER_AGENT
    batch_size: int = DEFAULT_BATCH_SIZE
    prefix_length: int = 3
    retries: int = 0
    retry_backoff: float = 1.0
    blacklist_path: str | None = DEFAULT_BLACKLIST_PATH
    library_id: str = ""
    api_key: str = ""
    library_type: str = "user"
    collection: str | None = None
    tag: str | None = None
    create_notes: bool = True
    create_related_items: bool = False
    folder_name: str = "Replication folder"
    dry_run: bool = False
    verbose: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CheckerConfig:
        """Create config from a dictionary (e.g., loaded from YAML).

        Raises:
            ValueError: On unknown keys
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown config key(s): {', '.join(unknown)}")
        return cls(**data)

    @classmethod
    def from_yaml(cls, path: str | Path) -> CheckerConfig:
        """Load config from a YAML file.

        Raises:
            FileNotFoundError: If file doesn't exist
            ValueError: If YAML is not a mapping or has unknown keys
        """
        import yaml

        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError("Invalid config format: expected dict")
        return cls.from_dict(data)

    def apply_env(self, environ: dict[str, str] | None = None) -> CheckerConfig:
        """Fill credentials and endpoint from the environment where unset."""
        env = os.environ if environ is None else environ
        if not self.library_id:
            self.library_id = env.get("ZOTERO_LIBRARY_ID", "")
        if not self.api_key:
            self.api_key = env.get("ZOTERO_API_KEY", "")
        if env.get("REPLICATION_CHECKER_ENDPOINT"):
            self.endpoint = env["REPLICATION_CHECKER_ENDPOINT"]
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert config to a dictionary for serialization (without the API key)."""
        return {
            "endpoint": self.endpoint,
            "timeout": self.timeout,
            "user_agent": self.user_agent,
            "batch_size": self.batch_size,
            "prefix_length": self.prefix_length,
            "retries": self.retries,
            "retry_backoff": self.retry_backoff,
            "blacklist_path": self.blacklist_path,
            "library_id": self.library_id,
            "library_type": self.library_type,
            "collection": self.collection,
            "tag": self.tag,
            "create_notes": self.create_notes,
            "create_related_items": self.create_related_items,
            "folder_name": self.folder_name,
            "dry_run": self.dry_run,
            "verbose": self.verbose,
        }
