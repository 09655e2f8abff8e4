from __future__ import annotations

import html
import logging
import re
from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from strongteams.errors import ExtractionError
from strongteams.models import EventRecord, LeadInfo

logger = logging.getLogger(__name__)

# Labels used by the booking form; a field value ends where the next one starts.
BOOKING_FORM_LABELS = [
    "last name",
    "first name",
    "phone number",
    "email",
    "additional email",
    "notes",
    "appointment type",
    "booking page",
    "duration",
    "booking reference",
    "location",
    "reschedule",
    "cancel",
    "ycbm link",
]

EMAIL_PATTERN = re.compile(r"([a-zA-Z0-9._+-]+@[a-zA-Z0-9._-]+\.[a-zA-Z0-9._-]+)")
_NEXT_LABEL_PATTERN = re.compile(
    r"(" + "|".join(re.escape(label) for label in BOOKING_FORM_LABELS) + r")\s*:",
    re.IGNORECASE,
)

_BLOCK_REPLACEMENTS = [
    (re.compile(r"<br\s*/?>", re.IGNORECASE), "\n"),
    (re.compile(r"</\s*br\s*>", re.IGNORECASE), "\n"),
    (re.compile(r"</\s*p\s*>", re.IGNORECASE), "\n\n"),
    (re.compile(r"<p[^>]*>", re.IGNORECASE), "\n"),
    (re.compile(r"</\s*div\s*>", re.IGNORECASE), "\n"),
    (re.compile(r"<div[^>]*>", re.IGNORECASE), "\n"),
    (re.compile(r"</\s*li\s*>", re.IGNORECASE), "\n"),
    (re.compile(r"<li[^>]*>", re.IGNORECASE), "\n• "),
    (re.compile(r"</\s*h[1-6]\s*>", re.IGNORECASE), "\n\n"),
    (re.compile(r"<h[1-6][^>]*>", re.IGNORECASE), "\n"),
]
_TAG_PATTERN = re.compile(r"<[^>]*>")


def strip_html(text: str) -> str:
    """Turn an HTML event description into plain text, one field per line."""
    if not text:
        return ""
    for pattern, replacement in _BLOCK_REPLACEMENTS:
        text = pattern.sub(replacement, text)
    text = _TAG_PATTERN.sub("", text)
    text = html.unescape(text).replace("\xa0", " ")
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r" +\n", "\n", text)
    text = re.sub(r"\n +", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    text = text.strip()
    if text:
        text += "\n"
    return text


def extract_field(description: str, label: str) -> str:
    clean_label = label.replace(":", "").strip()
    if not clean_label:
        return ""
    match = re.search(re.escape(clean_label) + r"\s*:\s*([^\n\r]+)", description, re.IGNORECASE)
    if not match:
        return ""
    value = match.group(1).strip()
    next_label = _NEXT_LABEL_PATTERN.search(value)
    if next_label:
        value = value[: next_label.start()].strip()
    return value


def extract_first_email(description: str) -> str:
    email_field = extract_field(description, "Email:")
    if email_field:
        match = EMAIL_PATTERN.search(email_field)
        if match:
            return match.group(1)
    match = EMAIL_PATTERN.search(description)
    return match.group(1) if match else ""


def capitalize_word(word: str) -> str:
    if not word:
        return ""
    return word[0].upper() + word[1:].lower()


def format_domain_as_company_name(domain: str) -> str:
    if not domain:
        return ""
    company_part = domain.split(".")[0]
    company_part = re.sub(r"([a-z])([A-Z])", r"\1 \2", company_part)
    words = re.split(r"[-_ ]", company_part)
    return " ".join(capitalize_word(word) for word in words if word)


def company_from_email(email: str) -> str:
    if not email or "@" not in email:
        return ""
    return format_domain_as_company_name(email.split("@", 1)[1])


def _zone(tz_name: str) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, falling back to UTC", tz_name)
        return ZoneInfo("UTC")


def format_session_date(value: datetime, tz_name: str = "UTC") -> str:
    local = value.astimezone(_zone(tz_name))
    return f"{local.strftime('%B')} {local.day}, {local.year}"


def format_session_time(value: datetime, tz_name: str = "UTC") -> str:
    local = value.astimezone(_zone(tz_name))
    hour = local.hour % 12 or 12
    return f"{hour}:{local.strftime('%M %p')} {local.tzname()}"


def extract_lead_info(event: EventRecord, tz_name: str = "UTC") -> LeadInfo:
    description = strip_html(event.description or "")
    first_name = capitalize_word(extract_field(description, "First name:"))
    last_name = capitalize_word(extract_field(description, "Last name:"))
    email = extract_first_email(description)

    missing = [
        name
        for name, value in (("first name", first_name), ("last name", last_name), ("email", email))
        if not value
    ]
    if missing:
        raise ExtractionError(f"Missing required fields: {', '.join(missing)}")
    if "@" not in email:
        raise ExtractionError(f"Malformed email: {email}")

    formatted_date = format_session_date(event.start, tz_name) if event.start else ""
    formatted_time = format_session_time(event.start, tz_name) if event.start else ""
    lead = LeadInfo(
        first_name=first_name,
        last_name=last_name,
        full_name=f"{first_name} {last_name}",
        email=email,
        company_name=company_from_email(email),
        phone_number=extract_field(description, "Phone number:"),
        formatted_date=formatted_date,
        formatted_time=formatted_time,
        zoom_link=event.location or "",
    )
    logger.info("Extracted lead %s (%s)", lead.full_name, lead.email)
    return lead
