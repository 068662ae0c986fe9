"""Archive a source tree into a single LLM-friendly document."""

__version__ = "0.1.0"
