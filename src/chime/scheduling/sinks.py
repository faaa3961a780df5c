"""Ready-made delivery sinks.

Real deployments pass their own sink (e.g. one that posts a chat message);
these cover dry runs, tests and simple callable adapters.
"""

from __future__ import annotations

from collections.abc import Callable

from chime.core.logging import get_logger
from chime.reminders.models import DeliveryTarget

logger = get_logger(__name__)


class LoggingDeliverySink:
    """Logs each delivery instead of sending it anywhere."""

    def deliver(self, target: DeliveryTarget, payload: str) -> bool:
        logger.info("reminder_delivered", target=str(target), payload=payload)
        return True


class CallbackDeliverySink:
    """Adapts a plain function to the DeliverySink protocol.

    A callback returning ``None`` counts as success; anything else is
    interpreted as a boolean.
    """

    def __init__(self, callback: Callable[[DeliveryTarget, str], bool | None]) -> None:
        self._callback = callback

    def deliver(self, target: DeliveryTarget, payload: str) -> bool:
        result = self._callback(target, payload)
        return True if result is None else bool(result)


__all__ = ["LoggingDeliverySink", "CallbackDeliverySink"]
