"""
API route modules.
"""

from chronos.api.routes import content, search

__all__ = ["content", "search"]
