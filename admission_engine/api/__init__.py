"""HTTP API for the admission engine."""
from .main import create_app

__all__ = ["create_app"]
