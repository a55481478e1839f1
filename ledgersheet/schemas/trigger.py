"""TriggerInfo schema - one recurring trigger known to the trigger host."""

from dataclasses import dataclass
from typing import Any

from .dataset import Schedule


@dataclass(frozen=True)
class TriggerInfo:
    """
    A live recurring trigger.

    Attributes:
        trigger_id: Opaque identifier assigned by the host
        handler: Entry point the host invokes when the trigger fires
        schedule: Recurrence shape the trigger was created with
    """
    trigger_id: str
    handler: str
    schedule: Schedule

    def to_dict(self) -> dict[str, Any]:
        return {
            "trigger_id": self.trigger_id,
            "handler": self.handler,
            "schedule": self.schedule.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TriggerInfo":
        return cls(
            trigger_id=data["trigger_id"],
            handler=data.get("handler", ""),
            schedule=Schedule.from_dict(data.get("schedule")),
        )
