"""
Order Notifier Abstract Base Class

Defines the interface for broadcasting order events to the admin room,
plus the in-process room itself that every backend delivers into.

Delivery is best-effort and at most once per connected client per event.
Nothing is queued or replayed; a reconnecting dashboard re-fetches state.

Author: Khalil Bannouri
Version: 1.0.0
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Protocol

logger = logging.getLogger(__name__)

ORDER_CREATED = "orderCreated"
ORDER_UPDATED = "orderUpdated"


@dataclass(frozen=True)
class OrderEvent:
    """
    One admin-room event.

    Attributes:
        event: ``orderCreated`` or ``orderUpdated``
        order_id: Database id of the order
        order_number: Human-readable order number
        status: Status after the change
        timestamp: When the change was committed
        diet_partition: Partition of the order, for client-side filtering
        previous_status: Status before the change (updates only)
    """
    event: str
    order_id: int
    order_number: str
    status: str
    timestamp: datetime
    diet_partition: Optional[str] = None
    previous_status: Optional[str] = None

    def to_message(self) -> dict[str, Any]:
        """Wire form sent to WebSocket clients."""
        return {
            "event": self.event,
            "data": {
                "order_id": self.order_id,
                "order_number": self.order_number,
                "status": self.status,
                "previous_status": self.previous_status,
                "diet_partition": self.diet_partition,
                "timestamp": self.timestamp.isoformat(),
            },
        }

    @classmethod
    def from_message(cls, message: dict[str, Any]) -> "OrderEvent":
        data = message["data"]
        return cls(
            event=message["event"],
            order_id=int(data["order_id"]),
            order_number=data["order_number"],
            status=data["status"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            diet_partition=data.get("diet_partition"),
            previous_status=data.get("previous_status"),
        )


class RoomClient(Protocol):
    """Anything that can receive a JSON message (a WebSocket, in practice)."""

    async def send_json(self, data: Any) -> None:
        ...


class AdminRoom:
    """
    The set of connected admin sessions that opted into broadcasts.

    A client whose send fails is logged and removed; the event is not
    retried for it.
    """

    def __init__(self, send_timeout: float = 5.0):
        self._members: set = set()
        self.send_timeout = send_timeout

    def join(self, client: RoomClient) -> None:
        self._members.add(client)
        logger.info(f"Admin room: client joined ({len(self._members)} connected)")

    def leave(self, client: RoomClient) -> None:
        if client in self._members:
            self._members.discard(client)
            logger.info(f"Admin room: client left ({len(self._members)} connected)")

    def __contains__(self, client: object) -> bool:
        return client in self._members

    def __len__(self) -> int:
        return len(self._members)

    async def broadcast(self, message: dict[str, Any]) -> int:
        """Send ``message`` to every member. Returns how many received it."""
        members = tuple(self._members)
        if not members:
            return 0

        results = await asyncio.gather(
            *(self._send(client, message) for client in members)
        )
        return sum(1 for delivered in results if delivered)

    async def _send(self, client: RoomClient, message: dict[str, Any]) -> bool:
        try:
            await asyncio.wait_for(client.send_json(message), timeout=self.send_timeout)
            return True
        except Exception as e:
            logger.warning(f"Admin room: dropping client after failed send: {e!r}")
            self._members.discard(client)
            return False


class BaseOrderNotifier(ABC):
    """Abstract base class for order notifiers."""

    def __init__(self, room: Optional[AdminRoom] = None):
        self.room = room or AdminRoom()

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the backend name."""
        pass

    @abstractmethod
    async def publish(self, event: OrderEvent) -> None:
        """
        Broadcast an event. Must never raise: failures are logged and
        the event is dropped.
        """
        pass

    async def start(self) -> None:
        """Start background work, if any."""

    async def stop(self) -> None:
        """Stop background work, if any."""

    async def health_check(self) -> bool:
        return True
