"""Jump-host SSH tunnel manager."""

__version__ = "0.2.0"
