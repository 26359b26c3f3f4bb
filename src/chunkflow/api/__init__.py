"""HTTP surface for job control and progress streaming."""

from .main import create_app

__all__ = ["create_app"]
