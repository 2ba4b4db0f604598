"""OpenAI-compatible reverse proxy that normalizes non-conformant upstream dialects."""

__version__ = "0.1.0"
