#!/usr/bin/env python3
"""CLI entry point for replication-blacklist command.

Lists, removes and adds relations hidden from replication checks.
"""

import sys


def main() -> None:
    """Entry point for replication-blacklist command."""
    from replication_checker.checker import blacklist_main

    sys.exit(blacklist_main())


if __name__ == "__main__":
    main()
