"""Notification messages and the producer that carries them."""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field
from typing import Any

NOTIFICATION_TOPIC = "platform.notifications.ingress"
NOTIFICATION_CONFIG_VERSION = "v1.1.0"
NOTIFICATION_CONFIG_BUNDLE = "edge"
NOTIFICATION_CONFIG_APPLICATION = "fleet-management"
NOTIFICATION_CONFIG_EVENT_TYPE_IMAGE = "image-creation"
NOTIFICATION_CONFIG_EVENT_TYPE_DEVICE = "update-devices"
NOTIFICATION_CONFIG_USER = "fleet-management"


@dataclass
class EventNotification:
    """One event of a notification."""

    metadata: dict[str, str] = field(default_factory=dict)
    payload: str = ""


@dataclass
class RecipientNotification:
    """Who a notification is meant for."""

    only_admins: bool = False
    ignore_user_preferences: bool = False
    users: list[str] = field(default_factory=list)


@dataclass
class ImageNotification:
    """The body of a notification sent to the notifications service."""

    version: str = NOTIFICATION_CONFIG_VERSION
    bundle: str = NOTIFICATION_CONFIG_BUNDLE
    application: str = NOTIFICATION_CONFIG_APPLICATION
    event_type: str = NOTIFICATION_CONFIG_EVENT_TYPE_IMAGE
    timestamp: str = ""
    account: str = ""
    context: str = ""
    events: list[EventNotification] = field(default_factory=list)
    recipients: list[RecipientNotification] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Return the notification under its wire field names."""
        return {
            "version": self.version,
            "bundle": self.bundle,
            "application": self.application,
            "event_type": self.event_type,
            "timestamp": self.timestamp,
            "account_id": self.account,
            "context": self.context,
            "events": [
                {"metadata": dict(event.metadata), "payload": event.payload}
                for event in self.events
            ],
            "recipients": [
                {
                    "only_admins": recipient.only_admins,
                    "ignore_user_preferences": recipient.ignore_user_preferences,
                    "users": list(recipient.users),
                }
                for recipient in self.recipients
            ],
        }

    def to_json(self) -> str:
        """Return the notification as compact JSON."""
        return json.dumps(self.to_dict(), separators=(",", ":"))


def _as_bytes(value: str | bytes) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else bytes(value)


class EventProducer:
    """Collects produced messages; subclass to deliver them to a broker."""

    def __init__(self, brokers: list[str] | tuple[str, ...] = ()) -> None:
        self.brokers = list(brokers)
        self.messages: list[tuple[str, bytes, bytes]] = []
        self._lock = threading.Lock()

    def produce(self, topic: str, key: str | bytes, value: str | bytes) -> None:
        """Queue one message with its key under a topic."""
        message = (topic, _as_bytes(key), _as_bytes(value))
        with self._lock:
            self.messages.append(message)