"""Lunch volunteer openings from the public sign-up service.

No portal session is involved: the sign-up sheet is public, so this
collaborator talks to the sign-up API directly.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from portalbridge.logging import get_logger
from portalbridge.service.errors import PortalUnavailableError, ValidationError

logger = get_logger(__name__)

_URL_ID = re.compile(r"/go/([^#/?]+)")
_SIGNUP_TIMESTAMP = "%B, %d %Y %H:%M:%S"


@dataclass
class VolunteerPosition:
    position: str
    slots_total: int
    slots_filled: int
    slots_available: int
    status: str
    volunteers: List[str] = field(default_factory=list)


@dataclass
class VolunteerDay:
    date: str
    day_of_week: str
    time: str
    location: str
    positions: List[VolunteerPosition]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def signup_url_id(signup_url: str) -> str:
    match = _URL_ID.search(signup_url)
    if not match:
        raise ValueError(f"could not extract sign-up id from {signup_url!r}")
    return match.group(1)


def parse_signup_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse ``"December, 08 2025 10:45:00"``."""

    if not value:
        return None
    try:
        return datetime.strptime(value.strip(), _SIGNUP_TIMESTAMP)
    except ValueError:
        return None


def _clock_label(moment: datetime) -> str:
    hour = moment.hour % 12 or 12
    minutes = "" if moment.minute == 0 else f":{moment.minute:02d}"
    suffix = "pm" if moment.hour >= 12 else "am"
    return f"{hour}{minutes}{suffix}"


def format_time_range(start: Optional[datetime], end: Optional[datetime]) -> str:
    if start is None or end is None:
        return ""
    return f"{_clock_label(start)} - {_clock_label(end)}"


def _as_int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def parse_volunteer_slots(data: Any) -> List[VolunteerDay]:
    """Days that still have at least one open position, sorted by date."""

    slots = ((data or {}).get("DATA") or {}).get("slots") if isinstance(data, dict) else None
    if not isinstance(slots, dict):
        return []

    days: List[VolunteerDay] = []
    for slot in slots.values():
        if not isinstance(slot, dict):
            continue
        start = parse_signup_timestamp(slot.get("starttime"))
        if start is None:
            continue
        end = parse_signup_timestamp(slot.get("endtime"))
        positions: List[VolunteerPosition] = []
        for item in slot.get("items") or []:
            if not isinstance(item, dict):
                continue
            name = item.get("item") or item.get("itemcomment") or ""
            total = _as_int(item.get("qty"))
            filled = _as_int(item.get("participantCount"))
            if not name or total <= 0 or filled >= total:
                continue
            positions.append(
                VolunteerPosition(
                    position=name,
                    slots_total=total,
                    slots_filled=filled,
                    slots_available=total - filled,
                    status="available",
                )
            )
        if not positions:
            continue
        days.append(
            VolunteerDay(
                date=start.date().isoformat(),
                day_of_week=start.strftime("%A"),
                time=format_time_range(start, end),
                location=slot.get("location") or "Dining hall",
                positions=positions,
            )
        )
    days.sort(key=lambda day: day.date)
    return days


def week_range(week: str, today: date) -> Optional[Tuple[date, date]]:
    """Sunday through Saturday for ``this``, ``next`` or the week holding an ISO date."""

    key = week.strip().lower()
    if key == "this":
        anchor = today
    elif key == "next":
        anchor = today + timedelta(days=7)
    else:
        try:
            anchor = date.fromisoformat(key)
        except ValueError:
            return None
    sunday = anchor - timedelta(days=(anchor.weekday() + 1) % 7)
    return sunday, sunday + timedelta(days=6)


def filter_days(
    days: List[VolunteerDay],
    *,
    on_date: Optional[str] = None,
    week: Optional[str] = None,
    today: Optional[date] = None,
) -> List[VolunteerDay]:
    if on_date:
        return [day for day in days if day.date == on_date]
    if week:
        bounds = week_range(week, today or date.today())
        if bounds is None:
            raise ValidationError(
                "week must be 'this', 'next' or a YYYY-MM-DD date",
                detail={"week": week},
            )
        start, end = (bound.isoformat() for bound in bounds)
        return [day for day in days if start <= day.date <= end]
    return days


class LunchVolunteerSearch:
    def __init__(
        self,
        *,
        signup_url: str,
        api_url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.url_id = signup_url_id(signup_url)
        self.api_url = api_url
        self.timeout = timeout
        self._transport = transport
        self._today = today

    async def search(
        self, *, on_date: Optional[str] = None, week: Optional[str] = None
    ) -> List[VolunteerDay]:
        if on_date:
            try:
                date.fromisoformat(on_date)
            except ValueError as exc:
                raise ValidationError("date must be YYYY-MM-DD", detail={"date": on_date}) from exc

        payload = {"forSignUpView": True, "urlid": self.url_id, "portalid": 0}
        async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
            try:
                response = await client.post(
                    self.api_url,
                    json=payload,
                    headers={"Accept": "application/json, text/plain, */*"},
                )
            except httpx.HTTPError as exc:
                raise PortalUnavailableError("Sign-up service is not responding") from exc
        if not response.is_success:
            raise PortalUnavailableError(
                f"Sign-up service returned status {response.status_code}"
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise PortalUnavailableError("Sign-up service returned invalid JSON") from exc

        days = filter_days(
            parse_volunteer_slots(data), on_date=on_date, week=week, today=self._today()
        )
        logger.info("lunch_volunteers_fetched", days=len(days))
        return days
