"""pCloud file-synchronization adapter."""

__version__ = "0.1.0"
