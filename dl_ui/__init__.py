"""Command-line surface of the distributed benchmark launcher."""
