"""Shared utilities: errors, logging and file helpers."""
