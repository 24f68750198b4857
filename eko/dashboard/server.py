"""FastAPI operator surface for Eko.

Endpoints:
  GET  /api/agent/health              Worker liveness (ping/pong round trip)
  POST /api/agent/ask                 Direct message to the agent
  POST /api/agent/reset               Drop one user's conversation (or all)
  GET  /api/reflection/status         Current reflection status
  GET  /api/reflection/stats          Counters, history, rate limits
  POST /api/reflection/trigger        Manual reflection (dry run, force, ...)
  POST /api/reflection/reset-cooldown Clear the post cooldown
  WS   /ws                            Reflection status/progress/update events
"""

import asyncio
import json
import logging
import threading
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from brain.agent_service import WorkerError

logger = logging.getLogger("eko.dashboard")

# References set by create_app()
_agent = None
_reflection = None


def create_app(agent, reflection=None) -> FastAPI:
    """Create the FastAPI app with references to the agent service and reflection scheduler."""
    global _agent, _reflection
    _agent = agent
    _reflection = reflection
    return app


app = FastAPI(title="Eko", docs_url=None, redoc_url=None)


class AskBody(BaseModel):
    message: str
    sender: str = "operator"
    location: Optional[str] = None
    status_message: Optional[str] = None


class ResetBody(BaseModel):
    user_id: Optional[str] = None


class TriggerBody(BaseModel):
    room_id: Optional[str] = None
    dry_run: bool = False
    force: bool = False
    ignore_rate_limit: bool = False


def build_prompt(body: AskBody) -> str:
    """JSON prompt in the shape the worker expects for a direct message."""
    payload = {
        "type": "direct",
        "from": body.sender,
        "message": body.message,
        "time": datetime.now(timezone.utc).isoformat(),
    }
    if body.location:
        payload["location"] = body.location
    if body.status_message:
        payload["statusMessage"] = body.status_message
    return json.dumps(payload, ensure_ascii=False)


# ── Agent ──────────────────────────────────────────────────────────


@app.get("/api/agent/health")
async def agent_health():
    if _agent is None:
        return JSONResponse({"status": "error", "message": "Agent not available"}, status_code=503)
    alive = await run_in_threadpool(_agent.ping)
    return JSONResponse(
        {
            "status": "ok" if alive else "down",
            "ready": _agent.is_ready,
            "pid": _agent.pid,
            "pending": _agent.pending_count,
            "sessionId": _agent.session_id,
        },
        status_code=200 if alive else 503,
    )


@app.post("/api/agent/ask")
async def agent_ask(body: AskBody):
    if _agent is None:
        return JSONResponse({"status": "error", "message": "Agent not available"}, status_code=503)
    if not body.message.strip():
        return JSONResponse({"status": "error", "message": "Message required"}, status_code=400)
    try:
        result = await run_in_threadpool(_agent.ask, build_prompt(body))
    except TimeoutError as e:
        return JSONResponse({"status": "error", "message": str(e)}, status_code=504)
    except WorkerError as e:
        logger.error("Agent request failed: %s", e)
        return JSONResponse({"status": "error", "message": str(e)}, status_code=502)
    return JSONResponse({"status": "ok", "response": result.response, "expression": result.expression})


@app.post("/api/agent/reset")
async def agent_reset(body: ResetBody):
    if _agent is None:
        return JSONResponse({"status": "error", "message": "Agent not available"}, status_code=503)
    done = await run_in_threadpool(_agent.reset_session, body.user_id)
    return JSONResponse({"status": "ok" if done else "noop"})


# ── Reflection ─────────────────────────────────────────────────────


def _reflection_unavailable() -> JSONResponse:
    return JSONResponse({"status": "error", "message": "Reflection not available"}, status_code=503)


@app.get("/api/reflection/status")
async def reflection_status():
    if _reflection is None:
        return _reflection_unavailable()
    return JSONResponse({"status": _reflection.status.value, "enabled": _reflection.enabled})


@app.get("/api/reflection/stats")
async def reflection_stats():
    if _reflection is None:
        return _reflection_unavailable()
    return JSONResponse(await run_in_threadpool(_reflection.get_stats))


@app.post("/api/reflection/trigger")
async def reflection_trigger(body: TriggerBody):
    if _reflection is None:
        return _reflection_unavailable()
    result = await run_in_threadpool(
        _reflection.trigger,
        body.room_id,
        body.dry_run,
        body.force,
        body.ignore_rate_limit,
    )
    data = {
        "action": result.action,
        "reason": result.reason,
        "message": result.message,
        "goalId": result.goal_id,
        "dryRun": result.dry_run,
        "rateLimited": result.rate_limited,
        "entryId": result.entry_id,
        "inputTokens": result.input_tokens,
        "outputTokens": result.output_tokens,
    }
    if result.context is not None:
        data["context"] = result.context
    return JSONResponse(data)


@app.post("/api/reflection/reset-cooldown")
async def reflection_reset_cooldown():
    if _reflection is None:
        return _reflection_unavailable()
    await run_in_threadpool(_reflection.reset_cooldown)
    return JSONResponse({"status": "ok"})


@app.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    """Forward reflection events to the dashboard as they happen."""
    await ws.accept()
    if _reflection is None:
        await ws.close()
        return

    loop = asyncio.get_running_loop()
    events: asyncio.Queue = asyncio.Queue()

    def listener(event: dict):
        loop.call_soon_threadsafe(events.put_nowait, event)

    async def pump():
        while True:
            event = await events.get()
            await ws.send_text(json.dumps(event, ensure_ascii=False, default=str))

    _reflection.add_listener(listener)
    sender = None
    try:
        await ws.send_text(json.dumps({"type": "status", "status": _reflection.status.value}))
        sender = asyncio.create_task(pump())
        # Client messages are ignored; reading is how a disconnect is noticed
        while True:
            await ws.receive_text()
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.debug("WebSocket closed: %s", e)
    finally:
        _reflection.remove_listener(listener)
        if sender is not None:
            sender.cancel()


def start_server(application: FastAPI, host: str = "0.0.0.0", port: int = 8420):
    """Run uvicorn in a daemon thread so it doesn't block the main loop."""
    import uvicorn

    def _run():
        uvicorn.run(application, host=host, port=port, log_level="warning")

    thread = threading.Thread(target=_run, daemon=True, name="dashboard-server")
    thread.start()
    logger.info("Dashboard server started at http://%s:%d", host, port)
    return thread
