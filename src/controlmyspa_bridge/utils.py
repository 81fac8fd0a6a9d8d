from __future__ import annotations

import math
import os
import signal
import sys
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from controlmyspa_bridge.logging_abstraction import get_logger

logger = get_logger(__name__)

_TENTH = Decimal("0.1")


def round_tenth(value: float) -> float:
    """Round half-up to one decimal place."""
    return float(Decimal(str(value)).quantize(_TENTH, rounding=ROUND_HALF_UP))


def round_half_step(value: float) -> float:
    """Round half-up to the nearest 0.5."""
    return math.floor(value / 0.5 + 0.5) * 0.5


def f2c(fahrenheit: float) -> float:
    """Fahrenheit to Celsius, one decimal place."""
    return round_tenth((fahrenheit - 32) * 5 / 9)


def c2f(celsius: float) -> float:
    """Celsius to Fahrenheit, one decimal place."""
    return round_tenth(celsius * 9 / 5 + 32)


def parse_reading(raw: object) -> float | None:
    """Parse a temperature reading as reported by the cloud.

    The cloud reports "NaN", 0 or negative numbers while a sensor has nothing
    to say; all of those become ``None``.
    """
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = float(Decimal(str(raw).strip()))
    except (InvalidOperation, ValueError):
        return None
    if math.isnan(value) or math.isinf(value) or value <= 0:
        return None
    return value


def parse_port(raw: object) -> int | None:
    """Component ports arrive as strings ("0", "1") and sometimes as ints."""
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw if raw >= 0 else None
    if isinstance(raw, str) and raw.strip().isdigit():
        return int(raw.strip())
    return None


def send_signal(signal_num: int) -> None:
    """Send a signal to the current process."""
    try:
        logger.debug("Sending signal %s to process %s", signal_num, os.getpid())
        os.kill(os.getpid(), signal_num)
    except OSError:
        logger.exception("Failed to send signal %s to process", signal_num)
        raise


def send_sigterm() -> None:
    send_signal(signal.SIGTERM)


def check_python_version() -> None:
    if sys.version_info < (3, 12):
        logger.critical(
            "Python 3.12 or newer is required",
            extra={"running": ".".join(str(x) for x in sys.version_info[:3])},
        )
        sys.exit(1)
