"""Payment processing and security core for the property marketplace."""

__version__ = "1.0.0"
