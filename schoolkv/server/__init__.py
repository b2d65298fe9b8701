"""Remote store service.

A small FastAPI application over SQLite that every context reads from and
writes to; accepted writes are published to the change broadcaster.
"""

from .app import create_app
from .remote_table import RemoteRow, RemoteTable

__all__ = ["RemoteRow", "RemoteTable", "create_app"]
