from .engine import ReviewEngine

__all__ = ["ReviewEngine"]
