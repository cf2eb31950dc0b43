"""Command line interface for feeledger."""
