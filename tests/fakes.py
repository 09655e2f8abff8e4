from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from strongteams.errors import ArtifactCreationError, LinkGenerationError
from strongteams.models import AppConfig, Artifact, AssessmentLink, EventRecord, LeadInfo, LeaderKey

PHASE1_DESCRIPTION = "Booked: Phase 1 session\nEmail: a@b.com First name: A Last name: B"
PHASE2_DESCRIPTION = "Booked: Phase 2 session\nEmail: a@b.com First name: A Last name: B"


def make_config(**overrides: Any) -> AppConfig:
    data: dict[str, Any] = {
        "calendar": {"base_url": "https://dav.example.com", "username": "u", "timezone": "UTC"},
        "phase1": {"identifiers": ["Phase 1"]},
        "phase2": {"identifiers": ["Phase 2"]},
        "drive": {"root_folder_id": "root", "template_id": "template"},
        "assessment_api": {"api_key": "key", "contact_email": "ops@example.com"},
    }
    for section, values in overrides.items():
        data.setdefault(section, {}).update(values)
    return AppConfig.from_dict(data)


def make_event(
    uid: str = "e1",
    description: str = PHASE1_DESCRIPTION,
    location: str = "https://zoom/x",
    start: datetime | None = None,
    summary: str = "Strong Teams session",
) -> EventRecord:
    start = start or datetime(2025, 1, 10, 18, 0, tzinfo=timezone.utc)
    return EventRecord(
        calendar_id="cal-1",
        uid=uid,
        summary=summary,
        description=description,
        location=location,
        start=start,
        end=start + timedelta(hours=1),
    )


def make_lead(full_name: str = "A B", email: str = "a@b.com", company: str = "B") -> LeadInfo:
    first, _, last = full_name.partition(" ")
    return LeadInfo(first_name=first, last_name=last, full_name=full_name, email=email, company_name=company)


class FakeCalendar:
    def __init__(self, events: list[EventRecord] | None = None) -> None:
        self.events = list(events or [])
        self.error: Exception | None = None
        self.windows: list[tuple[datetime, datetime]] = []

    def list_events(self, start: datetime, end: datetime) -> list[EventRecord]:
        self.windows.append((start, end))
        if self.error is not None:
            raise self.error
        return list(self.events)


class FakeArtifactStore:
    """In-memory Build Files keyed by leader, with a cell map per file."""

    def __init__(self) -> None:
        self.artifacts: dict[str, Artifact] = {}
        self.by_key: dict[tuple[str, str, str], str] = {}
        self.cells: dict[tuple[str, str, int], Any] = {}
        self.created = 0
        self.set_calls = 0
        self.fail_create = False
        self.fail_sections: set[str] = set()

    def _key(self, key: LeaderKey) -> tuple[str, str, str]:
        return (key.company, key.leader_name, key.file_name)

    def find_artifact(self, key: LeaderKey) -> Artifact | None:
        artifact_id = self.by_key.get(self._key(key))
        return self.artifacts.get(artifact_id) if artifact_id else None

    def create_artifact(self, template_id: str, key: LeaderKey) -> Artifact:
        if self.fail_create:
            raise ArtifactCreationError("template copy failed")
        self.created += 1
        artifact = Artifact(
            artifact_id=f"file-{self.created}",
            name=key.file_name,
            folder_id=f"folder-{self.created}",
            url=f"https://docs.example.com/file-{self.created}",
        )
        self.artifacts[artifact.artifact_id] = artifact
        self.by_key[self._key(key)] = artifact.artifact_id
        return artifact

    def get_artifact_by_id(self, artifact_id: str) -> Artifact | None:
        return self.artifacts.get(artifact_id)

    def get_field(self, artifact: Artifact, section: str, row: int) -> str:
        return str(self.cells.get((artifact.artifact_id, section, row), ""))

    def set_field(self, artifact: Artifact, section: str, row: int, value: Any) -> None:
        if section in self.fail_sections:
            raise RuntimeError(f"sheet {section} not found")
        self.set_calls += 1
        self.cells[(artifact.artifact_id, section, row)] = value


class FakeLinkClient:
    def __init__(self) -> None:
        self.calls: list[LeadInfo] = []
        self.fail = False
        self.login_code = "LOGIN-1"

    def create_link(self, lead: LeadInfo) -> AssessmentLink:
        self.calls.append(lead)
        if self.fail:
            raise LinkGenerationError("Unexpected response code 500")
        return AssessmentLink(
            login_code=self.login_code,
            response_url=f"https://assessment.example.com/{self.login_code}",
        )
