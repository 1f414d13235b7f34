from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Awaitable, Callable, Optional

from marketplace.core.config import settings
from marketplace.services.redis_client import build_async_client, build_sync_client
from marketplace.utils.json import dumps_bytes, loads

logger = logging.getLogger(__name__)

TOPIC_PREFIX = "ws-topic:"
INSTANCE_ID = os.getenv("INSTANCE_ID", "inst-" + os.urandom(4).hex())


class RealtimeBus:
    """Redis pub/sub mirror for booking events across processes.

    Publishing happens from request threads (blocking client); consumption
    runs as an asyncio task on the server loop. Every envelope carries the
    publishing instance id so a process ignores its own echoes.
    """

    def __init__(self, enabled: Optional[bool] = None, sync_client=None, async_client=None) -> None:
        self.enabled = settings.WS_BUS_ENABLED if enabled is None else enabled
        self._sync = sync_client
        self._async = async_client
        self._consumer: Optional[asyncio.Task] = None

    def _sync_client(self):
        if self._sync is None:
            self._sync = build_sync_client()
        return self._sync

    def publish_topic(self, topic: str, envelope: dict[str, Any]) -> bool:
        """Publish an envelope to ws-topic:<topic>. Returns False when the bus is off."""
        if not self.enabled:
            return False
        client = self._sync_client()
        if client is None:
            return False
        env = dict(envelope)
        env.setdefault("v", 1)
        env.setdefault("topic", topic)
        env["origin"] = INSTANCE_ID
        try:
            client.publish(f"{TOPIC_PREFIX}{topic}", dumps_bytes(env))
        except Exception as exc:
            # Local subscribers already received the event; remote ones resync on reconnect.
            logger.warning("bus_publish_failed topic=%s err=%s", topic, exc)
            return False
        return True

    async def start_pattern_consumer(
        self,
        pattern: str,
        handler: Callable[[str, dict[str, Any]], Awaitable[None]],
    ) -> bool:
        """Start a background task that PSUBSCRIBEs to a pattern and dispatches JSON payloads.

        Handler receives (topic_without_prefix, envelope_dict).
        """
        if not self.enabled or self._consumer is not None:
            return False
        if self._async is None:
            self._async = build_async_client()
        if self._async is None:
            return False
        pubsub = self._async.pubsub()
        await pubsub.psubscribe(pattern)

        async def _loop() -> None:
            try:
                async for msg in pubsub.listen():
                    if not isinstance(msg, dict) or msg.get("type") != "pmessage":
                        continue
                    await self.dispatch(msg.get("channel"), msg.get("data"), handler)
            finally:
                await pubsub.close()

        self._consumer = asyncio.create_task(_loop())
        logger.info("bus_consumer_started pattern=%s instance=%s", pattern, INSTANCE_ID)
        return True

    async def dispatch(
        self,
        channel: Any,
        data: Any,
        handler: Callable[[str, dict[str, Any]], Awaitable[None]],
    ) -> bool:
        """Decode one pub/sub message and hand it to ``handler``; skips own echoes."""
        try:
            payload = loads(data) if isinstance(data, (str, bytes, bytearray)) else {}
        except ValueError:
            logger.warning("bus_bad_payload channel=%s", channel)
            return False
        if not isinstance(payload, dict) or payload.get("origin") == INSTANCE_ID:
            return False
        if isinstance(channel, (bytes, bytearray)):
            channel = channel.decode("utf-8")
        topic = str(channel).replace(TOPIC_PREFIX, "", 1)
        try:
            await handler(topic, payload)
        except Exception:
            # Keep the stream alive; one bad handler call must not stop fan-out.
            logger.exception("bus_handler_failed topic=%s", topic)
            return False
        return True

    async def stop(self) -> None:
        if self._consumer is not None:
            self._consumer.cancel()
            self._consumer = None


bus = RealtimeBus()

__all__ = ["RealtimeBus", "bus", "INSTANCE_ID", "TOPIC_PREFIX"]
