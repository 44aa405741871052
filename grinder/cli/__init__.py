"""Command-line interface for grinder."""
