import asyncio
import logging
import random
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Callable, Mapping, Optional, Tuple

# -------------------- Throttle --------------------


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    v = value.strip()
    if v.isdigit():
        return float(v)
    try:
        dt = parsedate_to_datetime(v)
        if not dt.tzinfo:
            dt = dt.replace(tzinfo=timezone.utc)
        now = datetime.now(tz=timezone.utc)
        return max(0.0, (dt - now).total_seconds())
    except (TypeError, ValueError):
        return None


def header_value(headers: Optional[Mapping[str, str]], name: str) -> Optional[str]:
    if not headers:
        return None
    lname = name.lower()
    for k, v in headers.items():
        if k.lower() == lname:
            return v
    return None


class CooldownManager:
    """Process-wide pause gate. The deadline only ever moves forward."""

    def __init__(
        self,
        default_backoff_ms: Tuple[int, int] = (5000, 10000),
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_backoff_ms = default_backoff_ms
        self.clock = clock
        self.until = 0.0

    def extend_to(self, deadline: float) -> float:
        if deadline > self.until:
            self.until = deadline
        return self.until

    def activate(self, headers: Optional[Mapping[str, str]], url: str) -> float:
        seconds = parse_retry_after(header_value(headers, "retry-after"))
        if seconds is not None:
            logging.warning(
                "server requested a cool-down url=%s after=%.1fs, pausing all crawling",
                url,
                seconds,
            )
        else:
            seconds = random.randint(*self.default_backoff_ms) / 1000.0
            logging.warning(
                "rate limit without Retry-After url=%s, default backoff %.1fs",
                url,
                seconds,
            )
        return self.extend_to(self.clock() + max(0.0, seconds))

    def remaining(self) -> float:
        return max(0.0, self.until - self.clock())

    async def wait(self, should_stop: Callable[[], bool] = lambda: False) -> None:
        while not should_stop():
            left = self.remaining()
            if left <= 0:
                return
            await asyncio.sleep(min(left, 0.5))
