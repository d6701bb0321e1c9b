"""
asgi.py -- ASGI entry point for the Service Portal backend.

Kept separate from api/main.py so deployment tooling has one stable import
path regardless of how the API package is organized.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
