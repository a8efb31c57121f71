"""Agent records, orchestration, persistence and notifications."""
