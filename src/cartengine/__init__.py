"""cartengine - inventory-aware cart, coupon pricing and order commit."""

__version__ = "0.1.0"
