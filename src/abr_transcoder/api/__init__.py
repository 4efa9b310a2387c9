"""Realtime progress relay and queue boundary over HTTP."""

from .app import create_app

__all__ = ["create_app"]
