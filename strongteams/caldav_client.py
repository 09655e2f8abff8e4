from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any

import caldav
from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from strongteams.models import CalendarConfig, EventRecord

logger = logging.getLogger(__name__)


def _coerce_datetime(value: Any, is_end: bool = False) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    if isinstance(value, date):
        boundary = time.max if is_end else time.min
        return datetime.combine(value, boundary, tzinfo=timezone.utc)
    return None


def _first_vevent(calendar_obj: ICalendar) -> ICEvent | None:
    for component in calendar_obj.walk():
        if component.name == "VEVENT":
            return component
    return None


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


def parse_ical_event(calendar_id: str, raw_data: Any) -> EventRecord | None:
    calendar_obj = ICalendar.from_ical(_decode_raw_ical(raw_data))
    vevent = _first_vevent(calendar_obj)
    if vevent is None:
        return None

    uid = str(vevent.get("UID", "")).strip()
    if not uid:
        return None
    dtstart_raw = vevent.decoded("DTSTART") if vevent.get("DTSTART") is not None else None
    start = _coerce_datetime(dtstart_raw, is_end=False)
    dtend_raw = vevent.decoded("DTEND") if vevent.get("DTEND") is not None else None
    end = _coerce_datetime(dtend_raw, is_end=True)
    if start and end is None:
        end = start + timedelta(hours=1)
    # Expanded recurrences share a UID; the occurrence start keeps ids unique.
    if vevent.get("RECURRENCE-ID") is not None and start is not None:
        uid = f"{uid}:{start.astimezone(timezone.utc).strftime('%Y%m%dT%H%M%SZ')}"
    return EventRecord(
        calendar_id=calendar_id,
        uid=uid,
        summary=str(vevent.get("SUMMARY", "")).strip(),
        description=str(vevent.get("DESCRIPTION", "")).strip(),
        location=str(vevent.get("LOCATION", "")).strip(),
        start=start,
        end=end,
    )


class CalDAVService:
    def __init__(self, config: CalendarConfig) -> None:
        self.config = config
        self._principal: Any = None

    def _connect(self) -> None:
        if self._principal is not None:
            return
        if not self.config.base_url or not self.config.username:
            raise RuntimeError("CalDAV config is incomplete.")
        client = caldav.DAVClient(
            url=self.config.base_url,
            username=self.config.username,
            password=self.config.password,
        )
        self._principal = client.principal()

    def _calendars(self) -> list[Any]:
        self._connect()
        calendars = list(self._principal.calendars())
        if not self.config.calendar_ids:
            return calendars
        wanted = {cid.rstrip("/") for cid in self.config.calendar_ids}
        selected = [cal for cal in calendars if str(cal.url).rstrip("/") in wanted]
        found = {str(cal.url).rstrip("/") for cal in selected}
        for missing in sorted(wanted - found):
            logger.warning("Configured calendar not found: %s", missing)
        return selected

    def list_events(self, start: datetime, end: datetime) -> list[EventRecord]:
        """Events of every monitored calendar between ``start`` and ``end``.

        A calendar that cannot be read is logged and skipped so the rest of
        the window is still processed.
        """
        events: list[EventRecord] = []
        for calendar in self._calendars():
            calendar_id = str(calendar.url)
            name = getattr(calendar, "name", "") or calendar_id
            try:
                resources = calendar.date_search(start=start, end=end, expand=True)
            except Exception as exc:
                logger.warning("Could not read calendar %s: %s", name, exc)
                continue
            found = 0
            for resource in resources:
                try:
                    event = parse_ical_event(calendar_id, resource.data)
                except ValueError as exc:
                    logger.warning("Skipping unparseable resource in %s: %s", name, exc)
                    continue
                if event is not None:
                    events.append(event)
                    found += 1
            logger.info("Calendar %s: found %d events", name, found)
        logger.info("Total events found across all calendars: %d", len(events))
        return events
