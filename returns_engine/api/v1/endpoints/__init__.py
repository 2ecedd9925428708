from returns_engine.api.v1.endpoints import returns, refunds, replacements

__all__ = ["returns", "refunds", "replacements"]
