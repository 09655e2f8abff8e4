from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

import requests

from strongteams.errors import LinkGenerationError
from strongteams.models import AssessmentApiConfig, AssessmentLink, LeadInfo

logger = logging.getLogger(__name__)

CREATED_STATUS = 201


def _iso_timestamp(now: datetime | None = None) -> str:
    value = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class AssessmentLinkClient:
    """Mints one-time assessment links through the IDS (JustRespond) API.

    Creating a link is not idempotent, so a failed call is never retried
    here; the caller decides whether the event is attempted again.
    """

    def __init__(self, config: AssessmentApiConfig) -> None:
        self.config = config

    def is_configured(self) -> bool:
        return bool(self.config.endpoint and self.config.api_key and self.config.contact_email)

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": self.config.api_key,
            "Content-Type": "application/json",
        }

    def _base_payload(self, *, name: str, description: str, notify: bool) -> dict[str, Any]:
        return {
            "name": name,
            "description": description,
            "contact_email": self.config.contact_email,
            "start_date": _iso_timestamp(),
            "end_date": None,
            "unlimited_end": True,
            "email_to": notify,
            "cc": notify,
            "tag_id": self.config.tag_id,
            "dflt_language": "en_US",
            "dflt_color": "COLOR",
            "dflt_paper": "LETTER",
            "locked": False,
            "link_admin": False,
            "reportviews": [self.config.report_view],
            "can_view_proxy": True,
            "status_email_proxy": notify,
            "notification": {"frequency": "N", "limit": "H", "option_value": "6"},
            "activity": {"frequency": "N", "limit": "N", "option_value": 0},
        }

    def build_payload(self, lead: LeadInfo) -> dict[str, Any]:
        payload = self._base_payload(
            name=f"{lead.full_name} - Leading From Your Strengths",
            description="Leading From Your Strengths®",
            notify=True,
        )
        payload["cc_to"] = lead.email
        return payload

    def response_url(self, login_code: str) -> str:
        return f"{self.config.response_base_url.rstrip('/')}/{login_code}"

    def _post(self, payload: dict[str, Any]) -> requests.Response:
        return requests.post(
            self.config.endpoint,
            headers=self._headers(),
            json=payload,
            timeout=self.config.timeout_seconds,
        )

    def create_link(self, lead: LeadInfo) -> AssessmentLink:
        if not self.is_configured():
            raise LinkGenerationError("Assessment API config incomplete: endpoint/api_key/contact_email required.")
        try:
            response = self._post(self.build_payload(lead))
        except requests.RequestException as exc:
            raise LinkGenerationError(f"Assessment API request failed: {type(exc).__name__}: {exc}") from exc

        if response.status_code != CREATED_STATUS:
            raise LinkGenerationError(f"Unexpected response code {response.status_code}: {response.text[:300]}")
        try:
            result = response.json()
        except ValueError as exc:
            raise LinkGenerationError("Assessment API returned a non-JSON body.") from exc

        login_code = str((result or {}).get("login") or "").strip() if isinstance(result, dict) else ""
        if not login_code:
            raise LinkGenerationError("No login code returned from assessment API.")
        link = AssessmentLink(login_code=login_code, response_url=self.response_url(login_code))
        logger.info("Generated assessment link for %s", lead.full_name, extra={"login_code": login_code})
        return link

    def test_connectivity(self) -> tuple[bool, str]:
        if not self.is_configured():
            return False, "Assessment API config incomplete: endpoint/api_key/contact_email required."
        payload = self._base_payload(
            name="API Connection Test - Delete Me",
            description="Testing API connection",
            notify=False,
        )
        try:
            response = self._post(payload)
        except requests.RequestException as exc:
            return False, f"{type(exc).__name__}: {exc}"
        if response.status_code != CREATED_STATUS:
            return False, f"HTTP {response.status_code}: {response.text[:300]}"
        try:
            login_code = str(response.json().get("login") or "")
        except (ValueError, AttributeError):
            login_code = ""
        if not login_code:
            return True, "Connected, but the response carried no login code."
        return True, f"Connected. Test link created (delete it in IDS): {self.response_url(login_code)}"
