"""
HTTP routes for the matching feature.
"""

from .router import router

__all__ = ["router"]
