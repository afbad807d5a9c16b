"""Batch source analysis through a rate-limited remote LLM backend."""

__version__ = "0.1.0"
