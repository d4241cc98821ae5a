"""Order lifecycle, redistribution and donation service."""

__version__ = "0.1.0"
