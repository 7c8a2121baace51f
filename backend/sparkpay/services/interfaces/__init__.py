"""
Contracts implemented once per order kind (ticket, product).
"""

from .order_effects import OrderEffects

__all__ = ['OrderEffects']
