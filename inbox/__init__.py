"""Real-time messaging inbox: channel sessions, conversations and agent fan-out."""

__version__ = "0.1.0"
