"""Plugin worker processes speaking the satellite job protocol."""

__version__ = "1.0.0"
