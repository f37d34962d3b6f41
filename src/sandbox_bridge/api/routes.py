from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from fastapi import FastAPI, Request

from bridge_core.errors import InvalidRequestError
from bridge_core.logging import log_extra
from bridge_core.shared import coerce_bool


async def _json_body(request: Request, *, required: bool = True) -> Any:
    raw = await request.body()
    if not raw.strip():
        if required:
            raise InvalidRequestError("Request body is required.")
        return {}
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise InvalidRequestError("Malformed JSON body.") from exc


async def _json_object(request: Request, *, required: bool = True) -> dict[str, Any]:
    payload = await _json_body(request, required=required)
    if not isinstance(payload, dict):
        raise InvalidRequestError("Request body must be a JSON object.")
    return payload


def _ok(data: Any = None, **extra: Any) -> dict[str, Any]:
    envelope: dict[str, Any] = {"ok": True}
    if data is not None:
        envelope["data"] = data
    envelope.update(extra)
    return envelope


def register_bridge_routes(app: FastAPI, *, state: Any, logger: logging.Logger) -> None:
    @app.get("/healthz")
    def healthz() -> dict[str, Any]:
        return _ok({"status": "ok"})

    @app.get("/status")
    async def bridge_status(deep: str | None = None) -> dict[str, Any]:
        payload = await asyncio.to_thread(state.status_payload, deep=coerce_bool(deep, default=False))
        return _ok(payload)

    @app.get("/config")
    async def read_config() -> dict[str, Any]:
        return _ok(await asyncio.to_thread(state.config_service.config_view))

    @app.post("/config/update")
    async def update_config(request: Request) -> dict[str, Any]:
        update = await _json_object(request)
        reload_requested = state.reload_service.reload_requested(request.headers.get("x-reload"), default=False)
        strategy = state.reload_service.resolve_strategy(request.headers.get("x-strategy"))
        result = await asyncio.to_thread(state.config_service.update_config, update)
        result["reload"] = state.reload_service.apply(reload=reload_requested, strategy=strategy)
        return _ok(result, message=result["message"])

    @app.post("/auth/add")
    async def add_auth(request: Request) -> dict[str, Any]:
        payload = await _json_object(request)
        reload_requested = state.reload_service.reload_requested(request.headers.get("x-reload"), default=True)
        strategy = state.reload_service.resolve_strategy(request.headers.get("x-strategy"))
        result = await asyncio.to_thread(
            state.config_service.add_auth,
            payload.get("provider"),
            payload.get("key"),
            payload.get("mode"),
        )
        result["reload"] = state.reload_service.apply(reload=reload_requested, strategy=strategy)
        return _ok(result, message=result["message"])

    @app.post("/command")
    async def run_command(request: Request) -> dict[str, Any]:
        payload = await _json_object(request)
        outcome = await asyncio.to_thread(state.command_service.run, payload.get("args"))
        return _ok(outcome.data, stderr=outcome.stderr, exit_code=outcome.exit_code)

    @app.post("/auth/login")
    async def oauth_login(request: Request) -> dict[str, Any]:
        payload = await _json_object(request)
        url = await asyncio.to_thread(state.oauth_manager.start_login, payload.get("provider"))
        return {"ok": True, "data": url}

    @app.post("/auth/callback")
    async def oauth_callback(request: Request) -> dict[str, Any]:
        payload = await _json_object(request)
        message = await asyncio.to_thread(
            state.oauth_manager.submit_callback,
            payload.get("provider"),
            payload.get("callbackUrl") or payload.get("callback_url"),
        )
        return {"ok": True, "data": message}

    @app.get("/sessions")
    async def list_sessions() -> dict[str, Any]:
        return _ok(await asyncio.to_thread(state.session_service.list_sessions))

    @app.get("/sessions/{session_id}/history")
    async def session_history(session_id: str) -> dict[str, Any]:
        return _ok(await asyncio.to_thread(state.session_service.history, session_id))

    @app.delete("/sessions/{session_id}")
    async def delete_session(session_id: str) -> dict[str, Any]:
        return _ok(await asyncio.to_thread(state.session_service.delete, session_id))

    @app.post("/restart")
    async def restart(request: Request) -> dict[str, Any]:
        strategy = state.reload_service.resolve_strategy(request.headers.get("x-strategy"))
        action = state.reload_service.apply(reload=True, strategy=strategy)
        logger.info("Restart requested.", extra=log_extra("reload", "restart", result=action))
        return _ok({"reload": action}, message="Restarting..." if action == "restart" else "Reloaded")
