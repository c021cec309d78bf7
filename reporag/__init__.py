"""Durable repository ingestion and retrieval-augmented answers."""

__version__ = "0.1.0"
