"""
WebSocket endpoint for real-time dispatch updates.

/ws/calls - change events for calls, units and protocol evaluations
    {"type": "calls:update", "entity_type": "calls", "entity_id": 12,
     "change_kind": "updated", "timestamp": "..."}

Clients re-fetch what they display when an event arrives; events carry
no record data.

The dispatch services publish from request worker threads, so the
notifier subscriber hands each event to the event loop captured at
startup.
"""

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from typing import Optional, Set
import asyncio
import json
import logging

from jwt_auth import extract_token_from_websocket_params, validate_access_token
from services.dispatch import notifier

logger = logging.getLogger(__name__)

router = APIRouter()

_connections: Set[WebSocket] = set()
_connections_lock = asyncio.Lock()

# Loop that owns the connections (set by start_change_listener)
_loop: Optional[asyncio.AbstractEventLoop] = None

# Server-side ping interval (seconds) - keep under proxy idle timeouts
SERVER_PING_INTERVAL = 30


async def _add_connection(websocket: WebSocket):
    async with _connections_lock:
        _connections.add(websocket)
        logger.info(f"WebSocket /ws/calls connected (total: {len(_connections)})")


async def _remove_connection(websocket: WebSocket):
    async with _connections_lock:
        _connections.discard(websocket)
        logger.info(f"WebSocket /ws/calls disconnected (total: {len(_connections)})")


async def broadcast(message: dict):
    """Send a message to every /ws/calls connection, dropping dead ones"""
    async with _connections_lock:
        connections = _connections.copy()

    if not connections:
        return

    # Serialize once
    message_json = json.dumps(message)

    failed = []
    for websocket in connections:
        try:
            await websocket.send_text(message_json)
        except Exception as e:
            logger.warning(f"Failed to send to /ws/calls WebSocket: {e}")
            failed.append(websocket)

    if failed:
        async with _connections_lock:
            for ws in failed:
                _connections.discard(ws)


def _on_change(event: notifier.ChangeEvent):
    """Notifier subscriber; runs on whatever thread published the change"""
    loop = _loop
    if loop is None or loop.is_closed():
        return
    asyncio.run_coroutine_threadsafe(broadcast(event.to_message()), loop)


def start_change_listener():
    """Called from app lifespan startup"""
    global _loop
    _loop = asyncio.get_running_loop()
    notifier.subscribe(_on_change)


def stop_change_listener():
    global _loop
    notifier.unsubscribe(_on_change)
    _loop = None


async def _server_ping_loop(websocket: WebSocket, stop_event: asyncio.Event):
    """Send periodic pings from server to keep connection alive through proxies"""
    try:
        while not stop_event.is_set():
            await asyncio.sleep(SERVER_PING_INTERVAL)
            if stop_event.is_set():
                break
            try:
                await websocket.send_json({"type": "ping"})
            except Exception:
                break
    except asyncio.CancelledError:
        pass


async def _receive_loop(websocket: WebSocket, stop_event: asyncio.Event):
    """Handle incoming messages from client (ping/pong only)"""
    try:
        while not stop_event.is_set():
            try:
                data = await websocket.receive_text()
                message = json.loads(data)
                if message.get("type") == "ping":
                    await websocket.send_json({"type": "pong"})
            except json.JSONDecodeError as e:
                logger.warning(f"Invalid JSON received: {e}")
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"Receive loop error: {e}")
    finally:
        stop_event.set()


@router.websocket("/ws/calls")
async def websocket_calls(websocket: WebSocket):
    """
    WebSocket endpoint for dispatch change events.
    JWT validated at handshake before accept().
    """
    token = extract_token_from_websocket_params(websocket)
    claims = validate_access_token(token) if token else None
    if not claims:
        await websocket.close(code=4001, reason="Invalid or expired token")
        return

    await websocket.accept()
    await _add_connection(websocket)

    try:
        await websocket.send_json({
            "type": "connected",
            "message": f"Connected to dispatch stream as {claims.name or claims.user_id}",
        })
    except Exception as e:
        logger.error(f"Failed to send connection confirmation: {e}")
        await _remove_connection(websocket)
        return

    stop_event = asyncio.Event()
    ping_task = asyncio.create_task(_server_ping_loop(websocket, stop_event))
    receive_task = asyncio.create_task(_receive_loop(websocket, stop_event))

    try:
        done, pending = await asyncio.wait(
            [ping_task, receive_task],
            return_when=asyncio.FIRST_COMPLETED
        )
        for task in pending:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
    finally:
        stop_event.set()
        ping_task.cancel()
        receive_task.cancel()
        await _remove_connection(websocket)

