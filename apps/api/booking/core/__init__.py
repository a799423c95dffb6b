"""Cross-cutting configuration, errors, clock and system mode."""
