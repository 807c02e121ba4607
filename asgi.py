"""
asgi.py -- Application assembly for RoleGate.

The ASGI servers import from here so the server command stays stable even if
the app object moves inside api/.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
