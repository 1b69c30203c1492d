from .buffer import AnomalyBuffer, confidence_band

__all__ = ["AnomalyBuffer", "confidence_band"]
