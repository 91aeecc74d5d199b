"""Normalize three raw expression datasets into matrix + annotation bundles."""

__version__ = "0.1.0"
