"""FastAPI application serving the shared remote key-value store."""

import json
import logging
from datetime import datetime
from typing import Any

from fastapi import FastAPI, HTTPException, Request

from ..broadcast import ChangeBroadcaster, ChangeEvent
from ..config import Config
from ..keys import is_sensitive, validate_key
from .remote_table import RemoteTable

logger = logging.getLogger(__name__)


def create_app(
    config: Config,
    table: RemoteTable,
    broadcaster: ChangeBroadcaster | None = None,
) -> FastAPI:
    """Create the remote store application.

    Args:
        config: Application configuration.
        table: Storage for the key-value rows.
        broadcaster: Optional broadcaster; every accepted write is published.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title="schoolkv Remote Store",
        description="Shared key-value storage with change notifications",
        version="0.1.0",
    )

    app.state.config = config
    app.state.table = table
    app.state.broadcaster = broadcaster

    def _check_key(key: str) -> None:
        try:
            validate_key(key)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        if is_sensitive(key, config.extra_sensitive_keys):
            raise HTTPException(status_code=403, detail=f"Key '{key}' is not stored remotely")

    @app.get("/api/health")
    async def api_health() -> dict[str, Any]:
        """Health check endpoint for monitoring and load balancers."""
        health: dict[str, Any] = {
            "status": "ok",
            "timestamp": datetime.now().isoformat(),
            "components": {
                "table": True,
                "broadcaster": broadcaster is not None and broadcaster.is_connected,
            },
        }

        try:
            health["components"]["key_count"] = table.count()
        except Exception as e:
            health["status"] = "degraded"
            health["components"]["table"] = False
            health["components"]["table_error"] = str(e)

        return health

    @app.get("/api/kv")
    async def api_list_keys() -> dict[str, Any]:
        """List stored keys."""
        keys = table.list_keys()
        return {"count": len(keys), "keys": keys}

    @app.get("/api/kv/{key}")
    async def api_get(key: str) -> dict[str, Any]:
        """Read one row."""
        _check_key(key)

        row = table.get(key)
        if row is None:
            raise HTTPException(status_code=404, detail=f"Key '{key}' not found")
        return row.to_dict()

    @app.put("/api/kv/{key}")
    async def api_put(key: str, request: Request) -> dict[str, Any]:
        """Upsert one row and publish the change."""
        _check_key(key)

        try:
            body = await request.json()
        except json.JSONDecodeError:
            raise HTTPException(status_code=400, detail="Body must be JSON")

        if not isinstance(body, dict) or "value" not in body:
            raise HTTPException(status_code=400, detail="Body must contain 'value'")

        row = table.upsert(key, body["value"], body.get("origin"))

        published = False
        if broadcaster is not None:
            event = ChangeEvent(
                key=row.key,
                value=row.value,
                origin=row.origin,
                updated_at=row.updated_at,
            )
            published = await broadcaster.publish_change(event)
            if not published:
                logger.warning(f"Change of {key} stored but not broadcast")

        result = row.to_dict()
        result["broadcast"] = published
        return result

    return app
