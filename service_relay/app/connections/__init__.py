from .registry import ConnectionRegistry

__all__ = ["ConnectionRegistry"]
