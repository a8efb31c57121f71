"""Command line output."""
