from dataclasses import dataclass
from datetime import timedelta
from types import MappingProxyType
from typing import Mapping

from flask import current_app

from security.errors import PolicyViolation
from security.event_log import EventType

DEFAULT_RETENTION_DAYS = {
    "authentication": 30,
    "lockout": 90,
    "device": 90,
    "incident": 365,
    "compliance": 365,
}

CATEGORY_BY_TYPE = {
    EventType.LOGIN_SUCCESS: "authentication",
    EventType.LOGIN_FAILURE: "authentication",
    EventType.ACCOUNT_LOCKED: "lockout",
    EventType.ACCOUNT_UNLOCKED: "lockout",
    EventType.NEW_DEVICE_LOGIN: "device",
    EventType.DEVICE_CONFIRMED: "device",
    EventType.DEVICE_DENIED: "device",
    EventType.DEVICE_REVOKED: "device",
    EventType.SUSPICIOUS_ACTIVITY: "incident",
    EventType.DATA_EXPORT_REQUESTED: "compliance",
    EventType.ACCOUNT_DELETION_REQUESTED: "compliance",
}


@dataclass(frozen=True)
class RetentionPolicy:
    """Minimum retention per event category. Built once per process."""

    floors: Mapping[str, timedelta]

    @classmethod
    def from_config(cls, config) -> "RetentionPolicy":
        days = dict(DEFAULT_RETENTION_DAYS)
        days.update(config.get("RETENTION_DAYS") or {})
        unknown = set(days) - set(DEFAULT_RETENTION_DAYS)
        if unknown:
            raise ValueError(f"Unknown retention categories: {sorted(unknown)}")
        floors = {}
        for category, value in days.items():
            value = int(value)
            if value < 0:
                raise ValueError(f"Retention for {category} must not be negative")
            floors[category] = timedelta(days=value)
        return cls(MappingProxyType(floors))

    def category_for(self, event_type) -> str:
        return CATEGORY_BY_TYPE[EventType(event_type)]

    def floor_for(self, event_type) -> timedelta:
        return self.floors[self.category_for(event_type)]

    def retained_until(self, event):
        return event.timestamp + self.floor_for(event.event_type)

    def ensure_deletable(self, event, now):
        """Raises PolicyViolation while the event is still under its retention floor."""
        keep_until = self.retained_until(event)
        if keep_until > now:
            raise PolicyViolation(
                f"{event.event_type} events must be kept until {keep_until.isoformat()}",
                event_id=event.id,
            )

    def to_dict(self) -> dict:
        return {category: floor.days for category, floor in self.floors.items()}


def current_policy() -> RetentionPolicy:
    return current_app.extensions["retention_policy"]
