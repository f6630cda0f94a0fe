"""Command-line interface for taskfork."""
