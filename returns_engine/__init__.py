"""Return / refund / replacement lifecycle backend."""

__version__ = "1.0.0"
