"""
API route modules.
"""

from medenroll.api.routes import enrollments, health, notifications

__all__ = ["enrollments", "health", "notifications"]
