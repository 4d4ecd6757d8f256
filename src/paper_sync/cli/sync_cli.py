#!/usr/bin/env python3
"""CLI entry point for the paper-sync command.

Reconciles a local paper library with NASA ADS.
"""

import sys


def main() -> None:
    """Entry point for paper-sync command."""
    from paper_sync.sync import main as sync_main

    sys.exit(sync_main())


if __name__ == "__main__":
    main()
