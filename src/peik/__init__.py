"""Peik -- chat session engine for streamed LLM providers."""

__version__ = "0.1.0"
