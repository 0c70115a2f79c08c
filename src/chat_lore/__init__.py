"""Background knowledge extraction over conversation history."""

__version__ = "0.1.0"
