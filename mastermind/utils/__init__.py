"""Process, file and configuration helpers."""
