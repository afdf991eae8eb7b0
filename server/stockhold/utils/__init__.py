from .quantity import quantize_quantity

__all__ = ["quantize_quantity"]
