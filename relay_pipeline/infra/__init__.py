"""Infra layer utilities (storage, mirror selection, browser sessions)."""

from .browser import BrowserSession, PlaywrightSession, playwright_factory
from .endpoints import EndpointHealth, EndpointSelector
from .session_pool import ResourcePool
from .storage import SQLiteManager, SQLiteStore

__all__ = [
    "BrowserSession",
    "EndpointHealth",
    "EndpointSelector",
    "PlaywrightSession",
    "ResourcePool",
    "SQLiteManager",
    "SQLiteStore",
    "playwright_factory",
]
