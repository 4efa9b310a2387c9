"""Fan progress events out to per-video rooms.

Rooms are named by ``videoId``. Joining is unauthenticated: any connected
member may watch any video's progress.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Set

from .models import ProgressEvent
from .progress import DEFAULT_CHANNEL, ProgressBus, Subscription

logger = logging.getLogger(__name__)


class RoomMember(ABC):
    """A connected client that can receive event payloads."""

    @abstractmethod
    def deliver(self, payload: Dict[str, Any]) -> None:
        """Send one wire payload. Raising drops the member from every room."""


class ProgressRelay:
    """Subscribes once to the bus and routes events to room members."""

    def __init__(self, bus: ProgressBus, channel: str = DEFAULT_CHANNEL):
        self.bus = bus
        self.channel = channel
        self._lock = threading.Lock()
        self._rooms: Dict[str, Set[RoomMember]] = {}
        self._subscription: Optional[Subscription] = None

    def start(self) -> "ProgressRelay":
        if self._subscription is None:
            self._subscription = self.bus.subscribe(self.channel, self.route)
        return self

    def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None

    def __enter__(self):
        return self.start()

    def __exit__(self, *args):
        self.stop()

    def join(self, member: RoomMember, video_id: str) -> None:
        with self._lock:
            self._rooms.setdefault(video_id, set()).add(member)

    def leave(self, member: RoomMember, video_id: str) -> None:
        with self._lock:
            room = self._rooms.get(video_id)
            if room is None:
                return
            room.discard(member)
            if not room:
                del self._rooms[video_id]

    def disconnect(self, member: RoomMember) -> None:
        """Remove ``member`` from every room."""
        with self._lock:
            for video_id in list(self._rooms):
                room = self._rooms[video_id]
                room.discard(member)
                if not room:
                    del self._rooms[video_id]

    def members(self, video_id: str) -> List[RoomMember]:
        with self._lock:
            return list(self._rooms.get(video_id, ()))

    def room_sizes(self) -> Dict[str, int]:
        with self._lock:
            return {video_id: len(room) for video_id, room in self._rooms.items()}

    def route(self, event: ProgressEvent) -> None:
        payload = event.to_payload()
        for member in self.members(event.video_id):
            try:
                member.deliver(payload)
            except Exception as e:
                logger.info("Dropping member %r after failed delivery: %s", member, e)
                self.disconnect(member)
