"""grinder: acquire and verify news article text for loosely identified events."""

__version__ = "0.4.0"
