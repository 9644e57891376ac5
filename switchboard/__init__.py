"""Event router and sandboxed runtime for chat-bot service modules."""

__version__ = "0.1.0"
