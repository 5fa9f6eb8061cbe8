from __future__ import annotations

import calendar as _calendar
import re
from dataclasses import asdict, dataclass
from datetime import date
from typing import Any, Callable, Dict, List, Optional

from portalbridge.logging import get_logger
from portalbridge.service.cache import SessionCache
from portalbridge.service.errors import PortalUnavailableError, ValidationError
from portalbridge.service.session import SessionManager
from portalbridge.storage.common import query_signature, user_handle

logger = get_logger(__name__)

DEFAULT_SEARCH_MONTHS = 3
FALLBACK_SEARCH_MONTHS = 12

_US_DATE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")


@dataclass
class CalendarEvent:
    id: str
    title: str
    start_date: str
    end_date: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    all_day: bool = False
    category: Optional[str] = None
    url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


def add_months(start: date, months: int) -> date:
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, _calendar.monthrange(year, month)[1])
    return date(year, month, day)


def portal_date(value: date) -> str:
    return value.strftime("%m/%d/%Y")


def normalize_event_date(value: Any) -> str:
    """MM/DD/YYYY becomes ISO YYYY-MM-DD; anything else passes through."""

    if not value:
        return ""
    text = str(value).strip()
    match = _US_DATE.match(text)
    if not match:
        return text
    month, day, year = (int(part) for part in match.groups())
    try:
        return date(year, month, day).isoformat()
    except ValueError:
        return text


def _first(item: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = item.get(key)
        if value not in (None, ""):
            return value
    return None


def parse_calendar_events(data: Any) -> List[CalendarEvent]:
    """Events from the portal's calendar JSON, sorted by start date.

    Accepts a bare list or an object with an ``events`` list; entries without
    both an id and a title are dropped.
    """

    if isinstance(data, list):
        items = data
    elif isinstance(data, dict):
        items = data.get("events") or []
    else:
        items = []

    events: List[CalendarEvent] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        event_id = _first(item, "id", "event_id", "record_identifier")
        title = _first(item, "description", "title", "summary", "tooltip")
        if not event_id or not title:
            continue
        tooltip = item.get("tooltip")
        events.append(
            CalendarEvent(
                id=str(event_id),
                title=str(title),
                description=tooltip if tooltip and tooltip != item.get("description") else None,
                start_date=normalize_event_date(_first(item, "start_date", "start")),
                end_date=normalize_event_date(_first(item, "end_date", "end")) or None,
                start_time=item.get("start_time") or None,
                end_time=item.get("end_time") or None,
                location=_first(item, "location", "venue"),
                all_day=item.get("start_time") is None and item.get("end_time") is None,
                category=_first(item, "category", "event_type", "type"),
                url=_first(item, "event_url", "url", "link"),
            )
        )
    events.sort(key=lambda event: event.start_date)
    return events


class CalendarSearch:
    NAMESPACE = "school_events"

    def __init__(
        self,
        sessions: SessionManager,
        cache: SessionCache,
        *,
        calendar_path: str = "/parent/calendar/household/events",
        ttl_hours: Optional[float] = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.sessions = sessions
        self.cache = cache
        self.calendar_path = calendar_path
        self.ttl_hours = ttl_hours
        self._today = today

    async def _fetch(self, identity: str, begin: date, end: date) -> List[CalendarEvent]:
        response = await self.sessions.authenticated_request(
            identity,
            self.calendar_path,
            params={"begin_date": portal_date(begin), "end_date": portal_date(end)},
            headers={"Accept": "application/json"},
        )
        if not response.is_success:
            raise PortalUnavailableError(
                f"Calendar search failed with portal status {response.status_code}"
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise PortalUnavailableError("Calendar returned a non-JSON response") from exc
        return parse_calendar_events(payload)

    async def upcoming_events(
        self,
        identity: str,
        *,
        search_months: Optional[int] = None,
        refresh: bool = False,
    ) -> List[CalendarEvent]:
        """Events from today forward.

        Without an explicit ``search_months`` the window is three months and
        widens once to twelve when that comes back empty.
        """

        if search_months is not None and search_months < 1:
            raise ValidationError("searchMonths must be at least 1")
        handle = user_handle(identity)
        begin = self._today()
        months = search_months or DEFAULT_SEARCH_MONTHS
        end = add_months(begin, months)
        signature = query_signature(
            {
                "beginDate": begin.isoformat(),
                "endDate": end.isoformat(),
                "widenWhenEmpty": search_months is None,
            },
            self.NAMESPACE,
        )
        if not refresh:
            cached = await self.cache.get(handle, signature)
            if cached is not None:
                logger.info("calendar_cache_hit", user_handle=handle, events=len(cached))
                return [CalendarEvent(**event) for event in cached]

        events = await self._fetch(identity, begin, end)
        if not events and search_months is None:
            logger.info(
                "calendar_window_widened",
                user_handle=handle,
                months=FALLBACK_SEARCH_MONTHS,
            )
            events = await self._fetch(identity, begin, add_months(begin, FALLBACK_SEARCH_MONTHS))

        await self.cache.set(handle, signature, [e.to_dict() for e in events], self.ttl_hours)
        logger.info("calendar_fetched", user_handle=handle, events=len(events))
        return events
