"""Message lifecycle and attachment pipeline core for room chat clients."""

__version__ = "0.1.0"
