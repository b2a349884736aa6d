"""
In-process notification bus.
Stage handlers publish anomaly and workflow updates here; subscribers
(websocket bridges, alerting, tests) receive them per channel.
"""

import logging
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Union
from uuid import uuid4

logger = logging.getLogger(__name__)

ANOMALIES_CHANNEL = "anomalies"
ALERTS_CHANNEL = "alerts"
WORKFLOWS_CHANNEL = "workflows"
ALL_CHANNELS = "all"

Subscriber = Callable[[dict[str, Any]], None]


class NotificationBus(ABC):
    """Fire-and-forget publisher. Delivery is best-effort."""

    @abstractmethod
    def publish(self, channel: str, message: dict[str, Any]) -> None:
        """Publish a message without waiting for any acknowledgement."""


class InMemoryNotificationBus(NotificationBus):
    """
    Channel broadcaster with a bounded message history.

    A subscriber registered on "all" receives every channel. A failing
    subscriber is logged and skipped; the remaining subscribers still
    receive the message.
    """

    def __init__(self, history_size: int = 100):
        self._subscribers: dict[str, dict[str, Subscriber]] = {}
        self._history: deque[dict[str, Any]] = deque(maxlen=history_size)

    def subscribe(self, channels: Union[str, list[str]], callback: Subscriber) -> str:
        """
        Register a callback on one or more channels.

        Returns:
            Subscription id for unsubscribe()
        """
        subscription_id = str(uuid4())
        if isinstance(channels, str):
            channels = [channels]
        for channel in channels:
            self._subscribers.setdefault(channel, {})[subscription_id] = callback

        logger.info(f"Subscription {subscription_id} registered on channels: {channels}")
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        removed = False
        for subscribers in self._subscribers.values():
            if subscribers.pop(subscription_id, None) is not None:
                removed = True
        return removed

    def publish(self, channel: str, message: dict[str, Any]) -> None:
        envelope = {
            **message,
            "channel": channel,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        self._history.append(envelope)

        targets = {
            **self._subscribers.get(ALL_CHANNELS, {}),
            **self._subscribers.get(channel, {}),
        }
        sent = 0
        for subscription_id, callback in targets.items():
            try:
                callback(envelope)
                sent += 1
            except Exception as e:
                logger.warning(
                    f"Failed to deliver {message.get('type')} to subscription {subscription_id}: {e}"
                )

        logger.debug(f"Broadcasted {message.get('type')} to {sent} subscribers on channel {channel}")

    def history(self, channel: Optional[str] = None, limit: int = 50) -> list[dict[str, Any]]:
        """Most recent messages, newest last."""
        messages = [m for m in self._history if channel is None or m["channel"] == channel]
        return messages[-limit:]

    def clear_history(self) -> None:
        self._history.clear()


def notify_anomaly_update(bus: NotificationBus, anomaly_id: Any, updates: dict[str, Any]) -> None:
    bus.publish(
        ANOMALIES_CHANNEL,
        {"type": "anomaly_update", "data": {"anomalyId": str(anomaly_id), "updates": updates}},
    )


def notify_high_severity_alert(bus: NotificationBus, anomaly: dict[str, Any]) -> None:
    """Alert on both the alerts and anomalies channels."""
    message = {
        "type": "high_severity_alert",
        "priority": "high",
        "data": {
            "id": str(anomaly.get("id")),
            "title": anomaly.get("title"),
            "severity": anomaly.get("severity"),
            "description": anomaly.get("description"),
            "location": anomaly.get("location"),
            "recommendedActions": ["immediate_review", "escalate_to_command"],
        },
    }
    bus.publish(ALERTS_CHANNEL, message)
    bus.publish(ANOMALIES_CHANNEL, message)


def notify_workflow_update(bus: NotificationBus, workflow_id: Any, status: dict[str, Any]) -> None:
    bus.publish(
        WORKFLOWS_CHANNEL,
        {"type": "workflow_update", "data": {"workflowId": str(workflow_id), "status": status}},
    )
