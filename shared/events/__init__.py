from shared.events.base import BaseEvent
from shared.events.security_events import InboundCheckCompletedEvent, OutputCheckCompletedEvent

__all__ = [
    "BaseEvent",
    "InboundCheckCompletedEvent",
    "OutputCheckCompletedEvent",
]
