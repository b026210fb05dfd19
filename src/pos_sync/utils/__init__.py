"""Shared utilities: logging, configuration, errors, rate limiting and retry."""
