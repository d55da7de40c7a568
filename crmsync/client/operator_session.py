from typing import Optional

import httpx

from crmsync.client.timeline import MessageTimeline, TimelineEntry
from crmsync.logging_config import get_logger

logger = get_logger("operator_session")

PAGE_SIZE = 200


class OperatorSession:
    """
    One operator's view of an order thread over the REST API and the /ws channel.

    The WebSocket transport is owned by the caller: it sends ``join_frames()`` after
    connecting, passes every received frame to ``handle_event`` and calls
    ``on_reconnect`` after a reconnect so missed events are recovered by a re-fetch.
    """

    def __init__(self, client: httpx.AsyncClient, order_id: int, scope: str = "order"):
        self.client = client
        self.order_id = order_id
        self.scope = scope
        self.thread_key: Optional[int] = None
        self.timeline = MessageTimeline()

    def join_frames(self) -> list[dict]:
        if self.scope in ("thread", "lead"):
            if self.thread_key is None:
                raise RuntimeError("Thread key unknown; call load() first")
            return [{"event": f"join_{self.scope}", "id": self.thread_key}]
        return [{"event": "join_order", "id": self.order_id}]

    async def load(self) -> list[TimelineEntry]:
        """Fetch every page of the thread and rebuild the timeline."""
        messages: list[dict] = []
        offset = 0
        while True:
            response = await self.client.get(
                f"/api/orders/{self.order_id}/messages",
                params={"limit": PAGE_SIZE, "offset": offset},
            )
            response.raise_for_status()
            page = response.json()
            self.thread_key = page["main_id"]
            messages.extend(page["messages"])
            offset += len(page["messages"])
            if not page["messages"] or offset >= page["total"]:
                break

        self.timeline.replace_all(messages)
        return self.timeline.messages()

    async def send(self, content: str, reply_to_message_id: Optional[int] = None) -> TimelineEntry:
        """Show the message immediately, then confirm or mark it failed."""
        entry = self.timeline.add_optimistic(content)
        body = {"content": content, "client_ref": entry.client_ref}
        if reply_to_message_id is not None:
            body["reply_to_message_id"] = reply_to_message_id

        try:
            response = await self.client.post(f"/api/orders/{self.order_id}/messages", json=body)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(
                "Operator send failed",
                extra={"context": {"order_id": self.order_id, "client_ref": entry.client_ref, "error": str(e)}},
            )
            self.timeline.fail_optimistic(entry.client_ref)
            return entry

        # the broadcast of the same message may already have replaced the entry
        self.timeline.merge(response.json())
        return entry

    def _belongs_here(self, message: dict) -> bool:
        return self.thread_key is None or message.get("main_id") == self.thread_key

    def handle_event(self, frame: dict) -> bool:
        """Apply one server frame. Returns True when the timeline changed."""
        event = frame.get("event", "")
        data = frame.get("data")
        if not isinstance(data, dict) or not self._belongs_here(data):
            return False
        if event.startswith("new_") and event.endswith("_message"):
            return self.timeline.merge(data)
        if event == "message_updated":
            return self.timeline.apply_update(data)
        return False

    async def on_reconnect(self) -> list[TimelineEntry]:
        return await self.load()
