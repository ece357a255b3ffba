"""Discord DM notifications and questions for local coding agents."""

__version__ = "0.3.0"
