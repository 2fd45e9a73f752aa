"""Core infrastructure: configuration, errors, logging, task helpers."""
