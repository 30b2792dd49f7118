"""Command-line surface for explorer-db diagnostics."""
