"""Shared utilities: logging, retry, validation, environment config."""
