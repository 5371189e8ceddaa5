"""Realtime ``creditsChanged`` push over WebSocket.

The first message is the current balance; later messages are the events
published after each committed ledger change.  Clients send ``ping`` to keep
the connection alive and should re-read the balance after reconnecting.
"""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from services.ledger_service import get_balance
from services.notification_service import EVENT_CREDITS_CHANGED, subscribe_credits_changed
from shared.errors import NotAuthenticated
from web_api.deps import authenticate

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])

POLICY_VIOLATION = 1008


async def send_json(ws: WebSocket, data: dict) -> None:
    """Send JSON data to WebSocket if connected."""
    if ws.client_state == WebSocketState.CONNECTED:
        await ws.send_json(data)


async def _pump(ws: WebSocket, account_id: str) -> None:
    async for event in subscribe_credits_changed(account_id):
        await send_json(ws, event)


@router.websocket("/ws/credits")
async def credits_socket(websocket: WebSocket) -> None:
    try:
        account_id = authenticate(
            websocket.headers.get("X-User-Id"),
            websocket.headers.get("X-Gateway-Secret"),
        )
    except NotAuthenticated:
        await websocket.close(code=POLICY_VIOLATION)
        return

    await websocket.accept()
    await send_json(websocket, {
        "event": EVENT_CREDITS_CHANGED,
        "account_id": account_id,
        "balance": await get_balance(account_id),
    })

    pump = asyncio.create_task(_pump(websocket, account_id))
    try:
        while True:
            message = await websocket.receive_text()
            if message == "ping":
                await send_json(websocket, {"event": "pong"})
    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception("Credits socket error for account=%s", account_id)
    finally:
        pump.cancel()
        try:
            await pump
        except asyncio.CancelledError:
            pass
        except Exception:
            logger.warning("Credits push stopped for account=%s", account_id, exc_info=True)
