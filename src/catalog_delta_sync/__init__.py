"""Incremental synchronization of commercetools catalog changes for a search index."""

__version__ = "0.1.0"
