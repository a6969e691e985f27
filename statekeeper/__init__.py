"""statekeeper — coordination service for infrastructure state files."""

__version__ = "0.1.0"
