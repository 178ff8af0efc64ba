"""Command-line interface for AppForge."""
