# caching/__init__.py
"""Fingerprinting and the three-tier result cache."""

from .cache_store import CacheStore
from .fingerprinter import Fingerprinter, exact_hash, semantic_hash, template_hash

__all__ = ["CacheStore", "Fingerprinter", "exact_hash", "semantic_hash", "template_hash"]
