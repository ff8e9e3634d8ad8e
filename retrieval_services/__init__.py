"""Hybrid lexical + vector retrieval services for a knowledge-base QA backend."""

__version__ = "1.0.0"
