"""HTTP surface for submitting and tracking jobs."""

from .application import create_app

__all__ = ["create_app"]
