"""Reading-access sharing and notification delivery backend."""

__version__ = "0.1.0"
