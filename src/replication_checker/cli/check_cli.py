#!/usr/bin/env python3
"""CLI entry point for replication-check command.

Checks a Zotero library or .bib file for replications and reproductions.
"""

import sys


def main() -> None:
    """Entry point for replication-check command."""
    from replication_checker.checker import main as check_main

    sys.exit(check_main())


if __name__ == "__main__":
    main()
