"""
Live Order Update Broadcaster

Keeps a registry of live subscribers per order and fans status changes out
to them. Subscribers are addressed by the canonical order id only.

Delivery is message passing: the broadcaster puts envelopes on each
subscriber's bounded queue and the transport (the SSE endpoint) drains it at
its own pace. A subscriber whose queue is full or that has been closed
counts as failed and is removed; the others keep receiving.

Heartbeats travel the same path, so a dead subscriber is also dropped by
the heartbeat loop.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

from hungerwood.core.exceptions import DeliveryFailure
from hungerwood.schemas import Order

logger = logging.getLogger(__name__)


# =============================================================================
# ENVELOPES
# =============================================================================

def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def initial_envelope(order: Order) -> dict:
    return {
        "type": "initial",
        "order": order.model_dump(mode="json"),
        "timestamp": _now_iso(),
    }


def connected_envelope() -> dict:
    return {
        "type": "connected",
        "message": "Real-time updates active",
        "timestamp": _now_iso(),
    }


def status_update_envelope(order: Order, previous_status: Any) -> dict:
    history = order.model_dump(mode="json", include={"status_history"})["status_history"]
    last = order.status_history[-1] if order.status_history else None
    return {
        "type": "statusUpdate",
        "orderId": order.id,
        "orderCode": order.order_code,
        "status": order.status.value,
        "previousStatus": getattr(previous_status, "value", previous_status),
        "statusHistory": history,
        "updatedAt": order.updated_at.isoformat() if order.updated_at else None,
        "updatedBy": last.updated_by if last else None,
        "timestamp": _now_iso(),
    }


def error_envelope(message: str) -> dict:
    return {
        "type": "error",
        "message": message,
        "timestamp": _now_iso(),
    }


# =============================================================================
# SUBSCRIBERS
# =============================================================================

@dataclass
class StreamEvent:
    """One item on a subscriber queue: a data envelope or a heartbeat."""
    payload: Optional[dict] = None
    heartbeat: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def format_sse(event: StreamEvent) -> str:
    """Render an event in text/event-stream framing."""
    if event.heartbeat:
        # Comment line: keeps proxies happy without firing onmessage
        return f": heartbeat {int(event.created_at.timestamp() * 1000)}\n\n"
    return f"data: {json.dumps(event.payload, default=str)}\n\n"


class SubscriberHandle(ABC):
    """Anything the broadcaster can push events to."""

    @abstractmethod
    async def deliver(self, payload: dict) -> None:
        """Raises DeliveryFailure when the event cannot be accepted."""
        pass

    @abstractmethod
    async def heartbeat(self) -> None:
        pass

    @abstractmethod
    def close(self) -> None:
        pass


class QueueSubscriber(SubscriberHandle):
    """
    Subscriber backed by a bounded asyncio.Queue.

    The transport consumes events() until the subscriber is closed.
    """

    _CLOSED = object()

    def __init__(self, maxsize: int = 32, label: str = ""):
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.label = label
        self.closed = False

    def __repr__(self):
        return f"<QueueSubscriber {self.label or id(self)} pending={self.queue.qsize()}>"

    def _put(self, event: StreamEvent) -> None:
        if self.closed:
            raise DeliveryFailure("Subscriber is closed")
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            raise DeliveryFailure("Subscriber queue is full")

    async def deliver(self, payload: dict) -> None:
        self._put(StreamEvent(payload=payload))

    async def heartbeat(self) -> None:
        self._put(StreamEvent(heartbeat=True))

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        with suppress(asyncio.QueueFull):
            self.queue.put_nowait(self._CLOSED)

    async def events(self) -> AsyncIterator[StreamEvent]:
        while True:
            if self.closed and self.queue.empty():
                return
            item = await self.queue.get()
            if item is self._CLOSED:
                return
            yield item


# =============================================================================
# BROADCASTER
# =============================================================================

class OrderBroadcaster:
    """
    Registry of live subscribers keyed by order id.

    Attributes:
        max_subscribers: Capacity per order
        heartbeat_interval: Seconds between heartbeat rounds
    """

    def __init__(self, max_subscribers: int = 100, heartbeat_interval: float = 30.0):
        self.max_subscribers = max_subscribers
        self.heartbeat_interval = heartbeat_interval
        self._clients: dict[str, set[SubscriberHandle]] = {}
        self._lock = asyncio.Lock()
        self._heartbeat_task: Optional[asyncio.Task] = None

    async def subscribe(self, order_id: str, handle: SubscriberHandle) -> bool:
        """Register a handle; False (nothing registered) when at capacity."""
        async with self._lock:
            clients = self._clients.setdefault(order_id, set())
            if len(clients) >= self.max_subscribers:
                if not clients:
                    del self._clients[order_id]
                logger.warning(f"Max connections reached for order {order_id}")
                return False
            clients.add(handle)
            count = len(clients)
        logger.info(f"Client connected to order {order_id}. Total clients: {count}")
        return True

    async def unsubscribe(self, order_id: str, handle: SubscriberHandle) -> None:
        async with self._lock:
            self._remove(order_id, handle)

    def _remove(self, order_id: str, handle: SubscriberHandle) -> None:
        # Caller holds self._lock
        clients = self._clients.get(order_id)
        if clients is None or handle not in clients:
            return
        clients.discard(handle)
        logger.info(f"Client disconnected from order {order_id}. Remaining: {len(clients)}")
        if not clients:
            del self._clients[order_id]
            logger.info(f"No more clients for order {order_id}, cleaned up")

    async def broadcast(self, order_id: str, payload: dict) -> int:
        """
        Deliver payload to every subscriber of the order.

        Returns:
            Number of subscribers that accepted the payload
        """
        async with self._lock:
            snapshot = list(self._clients.get(order_id, ()))
        if not snapshot:
            logger.debug(f"No clients connected for order {order_id}")
            return 0

        logger.info(f"Broadcasting update to {len(snapshot)} clients for order {order_id}")
        delivered = 0
        failed = []
        for handle in snapshot:
            try:
                await handle.deliver(payload)
                delivered += 1
            except Exception as e:
                logger.error(f"Failed to send update to client for order {order_id}: {e}")
                failed.append(handle)

        if failed:
            await self._drop(order_id, failed)
        return delivered

    async def heartbeat_once(self) -> int:
        """Send one heartbeat to every subscriber; returns how many failed."""
        async with self._lock:
            snapshot = [
                (order_id, handle)
                for order_id, clients in self._clients.items()
                for handle in clients
            ]

        failed: dict[str, list[SubscriberHandle]] = {}
        for order_id, handle in snapshot:
            try:
                await handle.heartbeat()
            except Exception as e:
                logger.error(f"Heartbeat failed for order {order_id}: {e}")
                failed.setdefault(order_id, []).append(handle)

        for order_id, handles in failed.items():
            await self._drop(order_id, handles)
        return sum(len(h) for h in failed.values())

    async def _drop(self, order_id: str, handles: list[SubscriberHandle]) -> None:
        async with self._lock:
            for handle in handles:
                self._remove(order_id, handle)
        for handle in handles:
            handle.close()

    # =========================================================================
    # HEARTBEAT LOOP
    # =========================================================================

    def start(self) -> None:
        """Start the background heartbeat loop on the running event loop."""
        if self._heartbeat_task is None or self._heartbeat_task.done():
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
            logger.info(f"Heartbeat loop started (every {self.heartbeat_interval}s)")

    async def stop(self) -> None:
        """Stop the heartbeat loop and close every subscriber."""
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is not None:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

        async with self._lock:
            handles = [h for clients in self._clients.values() for h in clients]
            self._clients.clear()
        for handle in handles:
            handle.close()
        logger.info("Broadcaster stopped")

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.heartbeat_once()
            except Exception:
                logger.exception("Heartbeat round failed")

    # =========================================================================
    # STATS
    # =========================================================================

    def client_count(self, order_id: str) -> int:
        return len(self._clients.get(order_id, ()))

    def total_client_count(self) -> int:
        return sum(len(clients) for clients in self._clients.values())

    def active_orders(self) -> list[str]:
        return list(self._clients.keys())

    def stats(self) -> dict:
        active = self.active_orders()
        return {
            "total_connections": self.total_client_count(),
            "active_orders": active,
            "order_count": len(active),
            "timestamp": _now_iso(),
        }
