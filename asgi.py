"""
asgi.py -- ASGI entry point for the Plannr auth core.

Page rendering lives outside this service. Anything mounted here later must
be added after api.main builds the app so the route guard still runs first.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
