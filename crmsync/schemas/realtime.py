from typing import Any, Literal, Optional

from pydantic import BaseModel


class RealtimeCommand(BaseModel):
    """Client frame on /ws, e.g. {"event": "join_order", "id": 7}."""

    event: str
    id: int

    @property
    def action(self) -> Optional[Literal["join", "leave"]]:
        head, _, _ = self.event.partition("_")
        return head if head in ("join", "leave") else None

    @property
    def scope(self) -> str:
        return self.event.partition("_")[2]


class RealtimeFrame(BaseModel):
    """Server frame: {"event": "new_order_message", "data": {...}}."""

    event: str
    data: Any = None

    def to_wire(self) -> dict:
        return self.model_dump(mode="json")
