"""Order eligibility decisions."""

from .order_matcher import OrderMatcher

__all__ = ["OrderMatcher"]
