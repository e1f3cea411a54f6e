"""Persistence models for generation records."""

from .records import Base, GenerationRow, GenerationStatus  # noqa: F401

__all__ = ["Base", "GenerationRow", "GenerationStatus"]
