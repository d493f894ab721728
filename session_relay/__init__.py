"""Real-time signaling relay for paired video/chat sessions."""

__version__ = "1.0.0"
