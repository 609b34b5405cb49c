"""Plume: media ingestion and atomic publication for a blog/CMS."""

__version__ = "0.1.0"
