"""
PageLens Analytics

Per-page storefront performance comparison: sessions, revenue, conversion
rate, average order value and order count for a set of landing pages.
"""

__version__ = "1.0.0"
