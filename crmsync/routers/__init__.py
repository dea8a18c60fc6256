"""API routers for all endpoints."""

from crmsync.routers import auth, connection, enrichment, sync, system

__all__ = [
    "auth",
    "connection",
    "sync",
    "enrichment",
    "system",
]
