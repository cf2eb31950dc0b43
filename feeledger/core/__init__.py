"""Cross-cutting core services for feeledger."""
