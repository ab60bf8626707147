"""Database availability and version pinger."""

__version__ = "0.1.0"
