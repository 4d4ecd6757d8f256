"""Command-line entry points for paper_sync."""
