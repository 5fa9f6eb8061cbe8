import json
from datetime import date, datetime

import httpx
import pytest

from portalbridge.service.cache import SessionCache
from portalbridge.service.calendar import (
    CalendarSearch,
    add_months,
    normalize_event_date,
    parse_calendar_events,
)
from portalbridge.service.directory import (
    PARENT,
    STUDENT,
    DirectorySearch,
    directory_query_params,
    parse_address,
    parse_directory_page,
)
from portalbridge.service.errors import PortalUnavailableError, ValidationError
from portalbridge.service.lunch import (
    LunchVolunteerSearch,
    filter_days,
    format_time_range,
    parse_volunteer_slots,
    signup_url_id,
    week_range,
)

DIRECTORY_PAGE = """
<div class="directory-Entry">
  <div class="directory-Entry_Header">
    <div class="directory-Entry_Title">Jane Smith</div>
    <span class="directory-Entry_Tag">III</span>
    <a href="mailto:jane@student.example.com">jane@student.example.com</a>
  </div>
  <div class="directory-Entry_FieldTitle">5511 Steele Court, New Albany, OH 43054-8225</div>
  <div class="ae-grid">
    <div class="ae-grid__item">
      <div class="directory-Entry_FieldTitle directory-Entry_FieldTitle--blue">John Smith</div>
    </div>
    <div class="ae-grid__item"><span class="directory-Entry_FieldLabel">Email</span></div>
    <div class="ae-grid__item--no-padding"><a href="mailto:john@example.com">john@example.com</a></div>
    <div class="ae-grid__item"><span class="directory-Entry_FieldLabel">Mobile</span></div>
    <div class="ae-grid__item--no-padding"><a href="tel:6145550100">(614) 555-0100</a></div>
  </div>
  <div class="ae-grid">
    <div class="ae-grid__item">
      <div class="directory-Entry_FieldTitle directory-Entry_FieldTitle--blue">Mary Smith</div>
    </div>
  </div>
</div>
<div class="directory-Entry"><div class="directory-Entry_Header"></div></div>
"""

SLOTS = {
    "DATA": {
        "slots": {
            "2": {
                "starttime": "December, 10 2025 11:00:00",
                "endtime": "December, 10 2025 12:30:00",
                "location": "",
                "items": [{"item": "Server", "qty": 2, "participantCount": 2}],
            },
            "1": {
                "starttime": "December, 08 2025 10:45:00",
                "endtime": "December, 08 2025 12:15:00",
                "location": "Lower School dining hall",
                "items": [
                    {"item": "Lunch helper", "qty": 3, "participantCount": 1},
                    {"item": "Cashier", "qty": 1, "participantCount": 1},
                ],
            },
            "3": {
                "starttime": "December, 15 2025 12:00:00",
                "endtime": "December, 15 2025 13:00:00",
                "items": [{"itemcomment": "Recess", "qty": "4", "participantCount": None}],
            },
        }
    }
}


class StubSessions:
    """Returns canned portal responses and records what was asked."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    async def authenticated_request(self, identity, url, method="GET", **kwargs):
        self.calls.append((identity, url, kwargs))
        return self.responses.pop(0)


class TestDirectory:
    def test_parse_address_splits_parts(self):
        assert parse_address("5511 Steele Court, New Albany, OH 43054-8225") == {
            "address": "5511 Steele Court",
            "city": "New Albany",
            "state": "OH",
            "postal_code": "430548225",
        }

    def test_parse_address_keeps_short_text_whole(self):
        assert parse_address("PO Box 12") == {"address": "PO Box 12"}

    def test_card_yields_student_then_parents(self):
        entries = parse_directory_page(DIRECTORY_PAGE)
        assert [e.name for e in entries] == ["Jane Smith", "John Smith", "Mary Smith"]

        student, father, mother = entries
        assert student.role == STUDENT
        assert student.grade_level == "III"
        assert student.email == "jane@student.example.com"
        assert student.city == "New Albany"

        assert father.role == PARENT
        assert father.email == "john@example.com"
        assert father.phone == "(614) 555-0100"
        assert father.address == "5511 Steele Court"

        assert mother.email is None
        assert "email" not in mother.to_dict()

    def test_query_params_always_send_every_field(self):
        params = dict(directory_query_params(last_name="Smith"))
        assert params["directory_entry[last_name]"] == "Smith"
        assert params["directory_entry[first_name]"] == ""
        assert params["commit"] == "Search"

    async def test_search_uses_cache_until_refresh(self, memory_store):
        sessions = StubSessions(
            httpx.Response(200, text=DIRECTORY_PAGE),
            httpx.Response(200, text=DIRECTORY_PAGE),
        )
        search = DirectorySearch(sessions, SessionCache(memory_store))

        first = await search.search("a@x.com", last_name="Smith")
        second = await search.search("a@x.com", last_name="Smith")
        assert len(sessions.calls) == 1
        assert [e.to_dict() for e in second] == [e.to_dict() for e in first]

        await search.search("a@x.com", last_name="Smith", refresh=True)
        assert len(sessions.calls) == 2

    async def test_cache_is_per_user(self, memory_store):
        sessions = StubSessions(
            httpx.Response(200, text=DIRECTORY_PAGE),
            httpx.Response(200, text="<html></html>"),
        )
        search = DirectorySearch(sessions, SessionCache(memory_store))
        assert len(await search.search("a@x.com", last_name="Smith")) == 3
        assert await search.search("b@x.com", last_name="Smith") == []
        assert [call[0] for call in sessions.calls] == ["a@x.com", "b@x.com"]

    async def test_portal_error_is_not_cached(self, memory_store):
        sessions = StubSessions(
            httpx.Response(500, text="oops"),
            httpx.Response(200, text=DIRECTORY_PAGE),
        )
        search = DirectorySearch(sessions, SessionCache(memory_store))
        with pytest.raises(PortalUnavailableError):
            await search.search("a@x.com", last_name="Smith")
        assert len(await search.search("a@x.com", last_name="Smith")) == 3


class TestCalendar:
    def test_add_months_clamps_day(self):
        assert add_months(date(2025, 1, 31), 1) == date(2025, 2, 28)
        assert add_months(date(2025, 11, 15), 3) == date(2026, 2, 15)

    def test_normalize_event_date(self):
        assert normalize_event_date("09/05/2025") == "2025-09-05"
        assert normalize_event_date("2025-09-05") == "2025-09-05"
        assert normalize_event_date(None) == ""

    def test_parse_events_sorts_and_drops_incomplete(self):
        events = parse_calendar_events(
            {
                "events": [
                    {"id": 2, "description": "Picture Day", "start_date": "10/01/2025",
                     "start_time": "8:00 AM"},
                    {"record_identifier": "1", "title": "Grandparents Day",
                     "start_date": "09/20/2025", "tooltip": "All school"},
                    {"id": 3, "start_date": "09/01/2025"},
                    "junk",
                ]
            }
        )
        assert [e.title for e in events] == ["Grandparents Day", "Picture Day"]
        assert events[0].all_day is True
        assert events[0].description == "All school"
        assert events[1].start_time == "8:00 AM"
        assert events[1].all_day is False

    async def test_empty_default_window_widens_to_twelve_months(self, memory_store):
        sessions = StubSessions(
            httpx.Response(200, json=[]),
            httpx.Response(200, json=[{"id": 1, "description": "Gala", "start_date": "05/01/2026"}]),
        )
        search = CalendarSearch(sessions, SessionCache(memory_store), today=lambda: date(2025, 9, 1))

        events = await search.upcoming_events("a@x.com")
        assert [e.title for e in events] == ["Gala"]
        first_params = sessions.calls[0][2]["params"]
        second_params = sessions.calls[1][2]["params"]
        assert first_params == {"begin_date": "09/01/2025", "end_date": "12/01/2025"}
        assert second_params["end_date"] == "09/01/2026"

        cached = await search.upcoming_events("a@x.com")
        assert [e.title for e in cached] == ["Gala"]
        assert len(sessions.calls) == 2

    async def test_explicit_window_does_not_widen(self, memory_store):
        sessions = StubSessions(httpx.Response(200, json={"events": []}))
        search = CalendarSearch(sessions, SessionCache(memory_store), today=lambda: date(2025, 9, 1))
        assert await search.upcoming_events("a@x.com", search_months=1) == []
        assert len(sessions.calls) == 1
        assert sessions.calls[0][2]["params"]["end_date"] == "10/01/2025"

    async def test_zero_months_is_rejected(self, memory_store):
        search = CalendarSearch(StubSessions(), SessionCache(memory_store))
        with pytest.raises(ValidationError):
            await search.upcoming_events("a@x.com", search_months=0)

    async def test_non_json_response_is_portal_unavailable(self, memory_store):
        sessions = StubSessions(httpx.Response(200, text="<html>login</html>"))
        search = CalendarSearch(sessions, SessionCache(memory_store))
        with pytest.raises(PortalUnavailableError):
            await search.upcoming_events("a@x.com", search_months=2)


class TestLunchVolunteers:
    def test_signup_url_id(self):
        assert signup_url_id("https://www.signupgenius.com/go/ABC-123-lunch#/") == "ABC-123-lunch"
        with pytest.raises(ValueError):
            signup_url_id("https://www.signupgenius.com/")

    def test_format_time_range(self):
        start = datetime(2025, 12, 8, 10, 45)
        end = datetime(2025, 12, 8, 12, 0)
        assert format_time_range(start, end) == "10:45am - 12pm"
        assert format_time_range(start, None) == ""

    def test_only_open_positions_are_kept(self):
        days = parse_volunteer_slots(SLOTS)
        assert [d.date for d in days] == ["2025-12-08", "2025-12-15"]
        monday = days[0]
        assert monday.day_of_week == "Monday"
        assert monday.time == "10:45am - 12:15pm"
        assert monday.location == "Lower School dining hall"
        assert [p.position for p in monday.positions] == ["Lunch helper"]
        assert monday.positions[0].slots_available == 2
        assert days[1].positions[0].position == "Recess"
        assert days[1].location == "Dining hall"

    def test_malformed_payload_yields_nothing(self):
        assert parse_volunteer_slots({"DATA": {"slots": []}}) == []
        assert parse_volunteer_slots(None) == []

    def test_week_range_runs_sunday_to_saturday(self):
        wednesday = date(2025, 12, 3)
        assert week_range("this", wednesday) == (date(2025, 11, 30), date(2025, 12, 6))
        assert week_range("next", wednesday) == (date(2025, 12, 7), date(2025, 12, 13))
        assert week_range("2025-12-07", wednesday) == (date(2025, 12, 7), date(2025, 12, 13))
        assert week_range("someday", wednesday) is None

    def test_filters(self):
        days = parse_volunteer_slots(SLOTS)
        today = date(2025, 12, 3)
        assert filter_days(days, week="this", today=today) == []
        assert [d.date for d in filter_days(days, week="next", today=today)] == ["2025-12-08"]
        assert [d.date for d in filter_days(days, on_date="2025-12-15")] == ["2025-12-15"]
        with pytest.raises(ValidationError):
            filter_days(days, week="someday", today=today)

    async def test_search_posts_signup_id(self):
        seen = []

        def handler(request):
            seen.append(json.loads(request.content))
            return httpx.Response(200, json=SLOTS)

        search = LunchVolunteerSearch(
            signup_url="https://www.signupgenius.com/go/ABC-123-lunch",
            api_url="https://api.signupgenius.com/v2/k/signups/report/filled",
            transport=httpx.MockTransport(handler),
            today=lambda: date(2025, 12, 3),
        )
        days = await search.search(week="next")
        assert [d.date for d in days] == ["2025-12-08"]
        assert seen == [{"forSignUpView": True, "urlid": "ABC-123-lunch", "portalid": 0}]

    async def test_search_rejects_bad_date_without_network(self):
        def handler(request):
            raise AssertionError("no request expected")

        search = LunchVolunteerSearch(
            signup_url="https://www.signupgenius.com/go/ABC",
            api_url="https://api.example.com/slots",
            transport=httpx.MockTransport(handler),
        )
        with pytest.raises(ValidationError):
            await search.search(on_date="12/08/2025")

    async def test_service_failure_is_portal_unavailable(self):
        search = LunchVolunteerSearch(
            signup_url="https://www.signupgenius.com/go/ABC",
            api_url="https://api.example.com/slots",
            transport=httpx.MockTransport(lambda request: httpx.Response(502)),
        )
        with pytest.raises(PortalUnavailableError):
            await search.search()
