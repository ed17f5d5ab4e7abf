"""Version metadata for Seshat."""

__version__ = "1.0.0"
