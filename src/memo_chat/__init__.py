"""Retrieval-augmented chat over personal voice memos."""

__version__ = "0.1.0"
