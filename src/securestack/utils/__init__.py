"""Host and logging utilities."""
