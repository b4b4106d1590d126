"""Shared helpers: console printing, structured logs, object storage."""
