"""Fold bus traffic into the lamp registry and send bulk lamp requests."""

from __future__ import annotations

import logging
import time
from typing import Callable

from lamp_registry import NEVER_EXPIRES, LampRegistry
from xaal_bus import BusMessage, XaalBus

logger = logging.getLogger(__name__)

LAMP_DEV_TYPE_PREFIX = "lamp."


def is_lamp_message(message: BusMessage) -> bool:
    return message.dev_type.startswith(LAMP_DEV_TYPE_PREFIX)


def reconcile_message(
    registry: LampRegistry,
    message: BusMessage,
    clock: Callable[[], float] = time.time,
) -> bool:
    """
    Record a sighting of the lamp that sent *message*.

    An ``alive`` notification sets the deadline to now plus the announced
    window. Any other lamp message sets it to never-expires, overwriting a
    deadline set earlier by an ``alive``.

    Args:
        registry: The lamp registry to update
        message: A decoded bus message
        clock: Source of the current time

    Returns:
        True if the message came from a lamp and the registry was updated
    """
    if not is_lamp_message(message):
        return False

    expires_at = NEVER_EXPIRES
    if message.msg_type == "notify" and message.action == "alive":
        window = message.alive_timeout
        if window is not None:
            expires_at = clock() + window
        else:
            logger.debug("alive from %s carries no timeout", message.source)

    registry.upsert(message.source, message.dev_type, expires_at)
    return True


def bulk_request(bus: XaalBus, registry: LampRegistry, action: str) -> bool:
    """Send *action* to every selected live lamp in a single request.

    The request goes out even when nothing is selected.
    """
    targets = registry.selected_targets()
    logger.info("Sending '%s' to %d lamp(s)", action, len(targets))
    return bus.write_bus("request", action, None, targets)
