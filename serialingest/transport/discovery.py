"""Best-effort serial device discovery.

Candidates are ranked in three tiers:

1. a port whose metadata mentions a known device hint (Arduino boards, WCH
   USB-UART bridges, anything advertising itself as USB);
2. a port whose device name follows the usual platform convention for
   USB serial adapters (``COMn``, ``/dev/ttyACMn``, ``/dev/ttyUSBn``);
3. the configured fallback identifier.

Discovery never raises. Enumeration problems are logged and resolve to the
fallback, and the open attempt that follows reports the real failure.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable, Sequence
from typing import Any, Final

from serial.tools import list_ports

from ..const import DEVICE_HINT_PATTERN, PLATFORM_PORT_PATTERN

logger = logging.getLogger("serialingest.discovery")

_DEVICE_HINT: Final[re.Pattern[str]] = re.compile(DEVICE_HINT_PATTERN, re.IGNORECASE)
_PLATFORM_PORT: Final[re.Pattern[str]] = re.compile(PLATFORM_PORT_PATTERN)

_METADATA_ATTRS: Final[tuple[str, ...]] = ("manufacturer", "description", "product", "hwid")

PortLister = Callable[[], Iterable[Any]]


def _metadata_text(port: Any) -> str:
    parts = [str(getattr(port, "device", "") or "")]
    for attr in _METADATA_ATTRS:
        value = getattr(port, attr, None)
        if value:
            parts.append(str(value))
    return " ".join(parts)


def select_port(candidates: Sequence[Any], fallback: str) -> str:
    """Pick the most likely device among *candidates*, or *fallback*."""
    for port in candidates:
        try:
            if _DEVICE_HINT.search(_metadata_text(port)):
                return str(port.device)
        except (TypeError, ValueError, AttributeError) as exc:
            logger.debug("Skipping unreadable port entry %r: %s", port, exc)

    for port in candidates:
        device = getattr(port, "device", None)
        if isinstance(device, str) and _PLATFORM_PORT.match(device):
            return device

    return fallback


def discover_port(fallback: str, lister: PortLister | None = None) -> str:
    """Enumerate serial ports and return the selected device identifier."""
    enumerate_ports = lister or list_ports.comports
    try:
        candidates = list(enumerate_ports())
    except (OSError, TypeError, ValueError, AttributeError) as exc:
        logger.warning("Error listing serial ports (%s); using fallback %s", exc, fallback)
        return fallback

    selected = select_port(candidates, fallback)
    if selected == fallback:
        logger.info("No serial device matched among %d candidate(s); using fallback %s", len(candidates), fallback)
    else:
        logger.info("Auto-detected serial device %s", selected, extra={"port": selected})
    return selected


__all__ = ["PortLister", "discover_port", "select_port"]
