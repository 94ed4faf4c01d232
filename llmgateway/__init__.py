"""Chat-completion translation, event-stream framing, token usage, cost expressions and config watching for an AI gateway."""

__version__ = "0.1.0"