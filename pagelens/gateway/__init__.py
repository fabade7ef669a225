"""
Upstream Gateway Module
"""
from .client import ShopifyGateway
from .shopifyql import ShopifyQLQuery, QueryBuildError

__all__ = [
    "ShopifyGateway",
    "ShopifyQLQuery",
    "QueryBuildError",
]
