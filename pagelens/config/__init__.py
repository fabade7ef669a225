"""
PageLens Analytics
Configuration Module
"""
from .settings import Settings, ShopifySettings, PipelineSettings, get_settings

__all__ = ["Settings", "ShopifySettings", "PipelineSettings", "get_settings"]
