"""Multi-worker LLM auditing of source repositories."""

__version__ = "0.1.0"
