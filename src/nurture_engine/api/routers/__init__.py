"""
API routers
"""

from . import workflows, executions, monitoring

__all__ = ["workflows", "executions", "monitoring"]
