"""Clock with optional time manipulation.

Responsibilities:
- Provide the current time (naive UTC) to services
- Advance time (days, hours, minutes) for tests and manual checks
- Freeze time at a given instant
"""

import threading
from datetime import datetime, timedelta
from typing import Optional

from vpn_billing.logging_config import get_logger
from vpn_billing.utils.timestamps import to_naive_utc, utc_now

logger = get_logger(__name__)


class TimeController:
    """Clock used by every time-dependent decision.

    Runs on real UTC time plus an offset. When created with ``frozen_at``
    the clock stands still and moves only through advance_time/set_time.

    Args:
        frozen_at: optional instant to freeze the clock at
    """

    def __init__(self, frozen_at: Optional[datetime] = None) -> None:
        # thread safety lock
        self._lock = threading.RLock()
        self._offset = timedelta(0)
        self._frozen_at = to_naive_utc(frozen_at) if frozen_at is not None else None

        logger.debug(
            "time_controller_initialized",
            frozen=self._frozen_at is not None,
            now=self.now().isoformat(),
        )

    def now(self) -> datetime:
        """Get the current time.

        Returns:
            Current time as naive UTC datetime
        """
        with self._lock:
            if self._frozen_at is not None:
                return self._frozen_at
            return utc_now() + self._offset

    @property
    def is_frozen(self) -> bool:
        return self._frozen_at is not None

    def advance_time(self, days: int = 0, hours: int = 0, minutes: int = 0) -> dict:
        """Advance time (days, hours, minutes).

        Args:
            days: number of days to advance
            hours: number of hours to advance
            minutes: number of minutes to advance

        Returns:
            Dictionary with:
                - old_time: time before advancement
                - new_time: time after advancement
                - time_advanced_seconds: amount of time advanced
        Raises:
            ValueError: if time values are negative
        """
        if days < 0 or hours < 0 or minutes < 0:
            raise ValueError("Cannot advance time backwards, negative values are not allowed.")

        delta = timedelta(days=days, hours=hours, minutes=minutes)

        with self._lock:
            old_time = self.now()
            if self._frozen_at is not None:
                self._frozen_at += delta
            else:
                self._offset += delta
            new_time = self.now()

        if delta:
            logger.info(
                "time_advanced",
                old_time=old_time.isoformat(),
                new_time=new_time.isoformat(),
                days=days,
                hours=hours,
                minutes=minutes,
            )

        return {
            "old_time": old_time,
            "new_time": new_time,
            "time_advanced_seconds": int(delta.total_seconds()),
        }

    def set_time(self, value: datetime) -> dict:
        """Jump to a specific instant.

        Args:
            value: Target time (aware or naive UTC)

        Returns:
            Dictionary with old_time and new_time

        Raises:
            ValueError: If the target is before the current time
        """
        target = to_naive_utc(value)
        with self._lock:
            old_time = self.now()
            if target < old_time:
                raise ValueError(
                    f"cannot set time backwards, current: {old_time.isoformat()}, "
                    f"requested: {target.isoformat()}"
                )
            if self._frozen_at is not None:
                self._frozen_at = target
            else:
                self._offset += target - old_time

            logger.info("time_set", old_time=old_time.isoformat(), new_time=target.isoformat())

        return {"old_time": old_time, "new_time": target}

    def reset_time(self) -> dict:
        """Reset back to real current time (unfreezes the clock)."""
        with self._lock:
            old_time = self.now()
            self._offset = timedelta(0)
            self._frozen_at = None
            new_time = self.now()

            logger.info("time_reset", old_time=old_time.isoformat(), new_time=new_time.isoformat())

            return {"old_time": old_time, "new_time": new_time}


_time_controller_instance: Optional[TimeController] = None
_controller_lock = threading.Lock()


def get_time_controller() -> TimeController:
    global _time_controller_instance
    if _time_controller_instance is None:
        with _controller_lock:
            if _time_controller_instance is None:
                _time_controller_instance = TimeController()
    return _time_controller_instance


def reset_time_controller() -> None:
    global _time_controller_instance
    with _controller_lock:
        _time_controller_instance = TimeController()
