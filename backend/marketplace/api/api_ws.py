import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, WebSocketException
from starlette.concurrency import run_in_threadpool

from ..crud.crud_booking import BookingStore, booking_to_payload
from ..crud.crud_user import UserDirectory
from ..realtime.events import BookingEvent, BookingEventHub, topic_for
from ..utils.errors import AuthExpired, AuthRequired
from ..utils.json import dumps, loads
from .auth import decode_access_token
from .dependencies import get_booking_store, get_event_hub, get_user_directory

logger = logging.getLogger(__name__)

router = APIRouter()

WS_4401_UNAUTHORIZED = 4401


@dataclass
class Envelope:
    v: int = 1
    type: str = ""        # default to "message" on send
    topic: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None

    @staticmethod
    def from_raw(raw: Any) -> "Envelope":
        if isinstance(raw, dict):
            return Envelope(
                v=int(raw.get("v", 1)),
                type=str(raw.get("type") or ""),
                topic=(str(raw["topic"]) if "topic" in raw and raw["topic"] is not None else None),
                payload=(raw.get("payload") if isinstance(raw.get("payload"), dict) else None),
            )
        return Envelope()

    @staticmethod
    def for_event(viewer_id: int, event: BookingEvent) -> "Envelope":
        return Envelope.from_raw(event.to_envelope(viewer_id))

    def to_json(self) -> str:
        data: Dict[str, Any] = {"v": self.v, "type": (self.type or "message")}
        if self.topic is not None: data["topic"] = self.topic
        if self.payload is not None: data["payload"] = self.payload
        return dumps(data)


def _extract_bearer_token(ws: WebSocket) -> Optional[str]:
    """Token from the ``bearer, <token>`` subprotocol, then the access_token cookie."""
    proto = ws.headers.get("sec-websocket-protocol", "") or ""
    parts = [p.strip() for p in proto.split(",") if p.strip()]
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1]
    return ws.cookies.get("access_token")


@router.websocket("/ws/bookings")
async def bookings_ws(
    websocket: WebSocket,
    token: Optional[str] = Query(None),
    hub: BookingEventHub = Depends(get_event_hub),
    store: BookingStore = Depends(get_booking_store),
    users: UserDirectory = Depends(get_user_directory),
):
    """Live booking changes for the authenticated viewer.

    Sends a ``bookings.snapshot`` first, then one ``booking.<event>`` envelope
    per change to a booking where the viewer is client or provider. Clients
    reconcile both into their local view by booking id.
    """
    try:
        email = decode_access_token(token or _extract_bearer_token(websocket))
    except AuthExpired:
        raise WebSocketException(code=WS_4401_UNAUTHORIZED, reason="Expired token")
    except AuthRequired:
        raise WebSocketException(code=WS_4401_UNAUTHORIZED, reason="Invalid token")
    user = await run_in_threadpool(users.get_by_email, email)
    if user is None or not user.is_active:
        raise WebSocketException(code=WS_4401_UNAUTHORIZED, reason="Invalid token")
    viewer_id = int(user.id)

    await websocket.accept()
    loop = asyncio.get_running_loop()
    queue: "asyncio.Queue[Envelope]" = asyncio.Queue()

    def _on_event(event: BookingEvent) -> None:
        # Called from request threads; hop onto this socket's loop.
        loop.call_soon_threadsafe(queue.put_nowait, Envelope.for_event(viewer_id, event))

    unsubscribe = hub.subscribe(viewer_id, _on_event)
    logger.info("ws_bookings_connect user=%s", viewer_id)
    try:
        def _snapshot() -> list:
            seen: Dict[int, Any] = {}
            for b in store.list_by_client(viewer_id) + store.list_by_provider(viewer_id):
                seen[b.id] = booking_to_payload(b)
            return list(seen.values())

        bookings = await run_in_threadpool(_snapshot)
        await websocket.send_text(
            Envelope(type="bookings.snapshot", topic=topic_for(viewer_id), payload={"bookings": bookings}).to_json()
        )

        async def send_loop() -> None:
            while True:
                env = await queue.get()
                await websocket.send_text(env.to_json())

        async def receive_loop() -> None:
            while True:
                raw = await websocket.receive_text()
                try:
                    env = Envelope.from_raw(loads(raw))
                except ValueError:
                    continue
                if env.type == "ping":
                    await websocket.send_text(Envelope(type="pong").to_json())

        tasks = [asyncio.create_task(send_loop()), asyncio.create_task(receive_loop())]
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                raise exc
    except WebSocketDisconnect:
        pass
    finally:
        unsubscribe()
        logger.info("ws_bookings_disconnect user=%s", viewer_id)
