"""HTTP API"""

from .app import create_app, build_engine

app = create_app()

__all__ = ["app", "create_app", "build_engine"]
