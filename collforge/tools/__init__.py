"""Command-line tools for collforge."""
