"""HTTP API for observers: listings, alert status updates and the assistant."""

from __future__ import annotations

import base64
import binascii
import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from homepost import __version__
from homepost.protocol import AlertUpdated
from homepost.store import ALERT_STATUSES, normalize_iso

if TYPE_CHECKING:
    from homepost.hub import Hub

DEFAULT_LIMIT = 100
MAX_LIMIT = 500
ONLINE_WINDOW_MINUTES = 2

_STATUS_RANK = {status: rank for rank, status in enumerate(ALERT_STATUSES)}

logger = logging.getLogger("homepost.api")


class StatusUpdate(BaseModel):
    status: str | None = None


class AssistantQuery(BaseModel):
    query: str = ""
    client_id: str | None = Field(default=None, alias="clientId")


class ImageAnalysisRequest(BaseModel):
    image: str = ""
    device_id: str | None = Field(default=None, alias="deviceId")


def page_bounds(limit: int | None, offset: int | None) -> tuple[int, int]:
    safe_limit = DEFAULT_LIMIT if not limit or limit < 1 else min(int(limit), MAX_LIMIT)
    safe_offset = max(int(offset or 0), 0)
    return safe_limit, safe_offset


def parse_date(name: str, raw: str | None) -> str | None:
    if raw is None or not raw.strip():
        return None
    try:
        value = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {name} format. Use ISO format: YYYY-MM-DD") from None
    return normalize_iso(value)


def decode_image(raw: str) -> bytes:
    data = (raw or "").strip()
    if data.startswith("data:") and "," in data:
        data = data.split(",", 1)[1]
    if not data:
        raise HTTPException(status_code=400, detail="Missing image data")
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError):
        raise HTTPException(status_code=400, detail="Image is not valid base64") from None


def _paged(key: str, rows: list[dict[str, Any]], total: int, limit: int, offset: int) -> dict[str, Any]:
    return {key: rows, "pagination": {"total": total, "limit": limit, "offset": offset}}


def create_app(hub: Hub) -> FastAPI:
    app = FastAPI(title="HomePost Hub", version=__version__)
    app.state.hub = hub
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "devices": hub.registry.producer_count,
            "observers": hub.registry.observer_count,
        }

    @app.get("/api/devices")
    async def list_devices(
        last_seen: int | None = Query(default=None, alias="lastSeen"),
        online: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> dict[str, Any]:
        safe_limit, safe_offset = page_bounds(limit, offset)
        minutes: int | None = None
        if last_seen is not None and last_seen > 0:
            minutes = last_seen
        if (online or "").lower() == "true":
            minutes = ONLINE_WINDOW_MINUTES if minutes is None else min(minutes, ONLINE_WINDOW_MINUTES)
        seen_after = None
        if minutes is not None:
            seen_after = normalize_iso(datetime.now(timezone.utc) - timedelta(minutes=minutes))
        rows, total = await hub.store.list_devices(seen_after=seen_after, limit=safe_limit, offset=safe_offset)
        for row in rows:
            row["connected"] = row.get("id") in hub.registry
        return _paged("devices", rows, total, safe_limit, safe_offset)

    @app.get("/api/transcriptions")
    async def list_transcriptions(
        device_id: str | None = Query(default=None, alias="deviceId"),
        start_date: str | None = Query(default=None, alias="startDate"),
        end_date: str | None = Query(default=None, alias="endDate"),
        search: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> dict[str, Any]:
        safe_limit, safe_offset = page_bounds(limit, offset)
        rows, total = await hub.store.list_transcriptions(
            device_id=device_id,
            start=parse_date("startDate", start_date),
            end=parse_date("endDate", end_date),
            search=search,
            limit=safe_limit,
            offset=safe_offset,
        )
        return _paged("transcriptions", rows, total, safe_limit, safe_offset)

    @app.get("/api/alerts")
    async def list_alerts(
        device_id: str | None = Query(default=None, alias="deviceId"),
        status: str | None = None,
        type: str | None = None,
        severity: str | None = None,
        start_date: str | None = Query(default=None, alias="startDate"),
        end_date: str | None = Query(default=None, alias="endDate"),
        limit: int | None = None,
        offset: int | None = None,
    ) -> dict[str, Any]:
        safe_limit, safe_offset = page_bounds(limit, offset)
        rows, total = await hub.store.list_alerts(
            device_id=device_id,
            status=status,
            type_=type,
            severity=severity,
            start=parse_date("startDate", start_date),
            end=parse_date("endDate", end_date),
            limit=safe_limit,
            offset=safe_offset,
        )
        return _paged("alerts", rows, total, safe_limit, safe_offset)

    @app.post("/api/alerts/{alert_id}/status")
    async def update_alert_status(alert_id: int, body: StatusUpdate) -> dict[str, Any]:
        status = (body.status or "").strip().lower()
        if status not in _STATUS_RANK:
            raise HTTPException(
                status_code=400,
                detail=f"Invalid status value. Status must be one of: {', '.join(ALERT_STATUSES)}",
            )
        current = await hub.store.get_alert(alert_id)
        if current is None:
            raise HTTPException(status_code=404, detail=f"No alert found with ID {alert_id}")
        current_rank = _STATUS_RANK.get(str(current.get("status")), 0)
        if _STATUS_RANK[status] < current_rank:
            raise HTTPException(
                status_code=409,
                detail=f"Alert {alert_id} is {current.get('status')}; cannot move back to {status}",
            )
        alert = await hub.store.update_alert_status(alert_id, status)
        if alert is None:
            raise HTTPException(status_code=404, detail=f"No alert found with ID {alert_id}")
        logger.info("Alert %s status %s -> %s", alert_id, current.get("status"), status)
        await hub.broadcaster.broadcast(AlertUpdated(alert=alert))
        return {"success": True, "alert": alert}

    @app.post("/api/assistant/query")
    async def assistant_query(body: AssistantQuery) -> dict[str, Any]:
        if hub.analysis is None:
            raise HTTPException(status_code=503, detail="Assistant is not configured (set OPENAI_API_KEY)")
        query = body.query.strip()
        if not query:
            raise HTTPException(status_code=400, detail="Query is required")
        try:
            answer = await hub.analysis.respond_to_query(query, body.client_id or "web-client")
        except Exception:
            logger.exception("Assistant query failed")
            raise HTTPException(status_code=502, detail="Assistant request failed") from None
        return {"response": answer}

    @app.post("/api/assistant/analyze-image")
    async def analyze_image(body: ImageAnalysisRequest) -> dict[str, Any]:
        if hub.analysis is None:
            raise HTTPException(status_code=503, detail="Assistant is not configured (set OPENAI_API_KEY)")
        image = decode_image(body.image)
        try:
            description = await hub.analysis.describe_image(image, body.device_id or "camera")
        except Exception:
            logger.exception("Image analysis failed")
            raise HTTPException(status_code=502, detail="Image analysis failed") from None
        return {"description": description}

    return app
