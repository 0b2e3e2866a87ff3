"""Streaming LLM chat relay with per-message and end-of-session feedback."""

__version__ = "0.3.0"
