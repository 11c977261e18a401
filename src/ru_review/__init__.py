"""Resumable multi-repo review orchestration on top of local git checkouts."""

__version__ = "0.1.0"
