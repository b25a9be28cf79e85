from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional
from zoneinfo import ZoneInfo


class BusinessClock:
    """Business-hours rules (weekdays, open..close local time) for timing sentences."""

    def __init__(
        self,
        timezone: str = "America/Mexico_City",
        open_hour: int = 9,
        close_hour: int = 18,
        now_fn: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._tz = ZoneInfo(timezone)
        self._open_hour = open_hour
        self._close_hour = close_hour
        self._now_fn = now_fn

    def now(self) -> datetime:
        if self._now_fn is not None:
            current = self._now_fn()
            if current.tzinfo is None:
                return current.replace(tzinfo=self._tz)
            return current.astimezone(self._tz)
        return datetime.now(self._tz)

    def is_open(self, at: Optional[datetime] = None) -> bool:
        local = at.astimezone(self._tz) if at else self.now()
        return local.weekday() < 5 and self._open_hour <= local.hour < self._close_hour

    def next_opening_phrase(self, at: Optional[datetime] = None) -> str:
        """Purpose: Describe the next opening time in customer-facing Spanish.
        Inputs/Outputs: Optional reference time; returns e.g. "mañana a las 9am".
        Side Effects / State: None.
        Dependencies: weekday/hour of the business timezone.
        Failure Modes: During open hours it returns the generic next-day phrase.
        If Removed: Off-hours handoffs cannot say when a human will reply.
        Testing Notes: Saturday -> "el lunes a las 9am"; Sunday -> "mañana lunes ...".
        """
        # Weekday numbering: Monday=0 .. Sunday=6.
        local = at.astimezone(self._tz) if at else self.now()
        day = local.weekday()
        hour = local.hour
        opening = f"{self._open_hour}am"
        if day < 5 and hour < self._open_hour:
            return f"hoy a las {opening}"
        if day == 4 and hour >= self._close_hour:
            return f"el lunes a las {opening}"
        if day == 5:
            return f"el lunes a las {opening}"
        if day == 6:
            return f"mañana lunes a las {opening}"
        if day < 4 and hour >= self._close_hour:
            return f"mañana a las {opening}"
        return f"el siguiente día hábil a las {opening}"

    def timing_sentence(self, style: str = "standard", at: Optional[datetime] = None) -> str:
        """Timing part of a handoff reply; style is "standard", "elaborate" or "none"."""
        if style == "none":
            return ""
        hours = f"lunes a viernes {self._open_hour}am-{self._close_hour - 12}pm"
        if self.is_open(at):
            if style == "elaborate":
                return "Un especialista te contactará pronto."
            return "En un momento te atiende un especialista."
        if style == "elaborate":
            return f"Un especialista te contactará el siguiente día hábil en horario de atención ({hours})."
        return f"Nuestro horario es de {hours}; un especialista te contactará {self.next_opening_phrase(at)}."
