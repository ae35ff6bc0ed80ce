"""
API MODULE
==========

FastAPI control surface for the fleet supervisor.

Usage:
    from fleet_core.api import create_app

    app = create_app(registry, scheduler)
"""

from .app import create_app

__all__ = ['create_app']
