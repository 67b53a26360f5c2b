"""Import guard: distributed rate limiting for transaction imports."""

__version__ = "0.1.0"
