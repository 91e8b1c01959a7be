"""Per-session chat agents over an OpenAI-compatible completion API."""

__version__ = "0.1.0"
