"""Physician directory engine: radius search over a registry that only answers postal-code queries."""

from .engine import DirectoryEngine
from .models import PhysicianRecord, SearchResult

__all__ = ["DirectoryEngine", "PhysicianRecord", "SearchResult"]
