"""Chronos: transcript knowledge pipeline and ranked semantic retrieval."""

__version__ = "0.1.0"
