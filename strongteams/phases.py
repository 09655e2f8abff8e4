from __future__ import annotations

import logging
from typing import Any, Callable, Protocol, TypeVar

from strongteams.errors import ArtifactNotFoundError, ValidationError
from strongteams.extraction import extract_lead_info
from strongteams.models import (
    AppConfig,
    Artifact,
    AssessmentLink,
    DriveConfig,
    EventRecord,
    LeadInfo,
    LeaderKey,
    LedgerRecord,
    Phase,
    Phase1Outcome,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ArtifactStore(Protocol):
    def find_artifact(self, key: LeaderKey) -> Artifact | None: ...

    def create_artifact(self, template_id: str, key: LeaderKey) -> Artifact: ...

    def get_artifact_by_id(self, artifact_id: str) -> Artifact | None: ...

    def get_field(self, artifact: Artifact, section: str, row: int) -> str: ...

    def set_field(self, artifact: Artifact, section: str, row: int, value: Any) -> None: ...


class LinkClient(Protocol):
    def create_link(self, lead: LeadInfo) -> AssessmentLink: ...


class EmailIndex(Protocol):
    def find_by_email(self, email: str, leader_name: str | None = None) -> LedgerRecord | None: ...


def classify_event(event: EventRecord, config: AppConfig) -> Phase | None:
    description = event.description or ""
    for identifier in config.phase1.identifiers:
        if identifier in description:
            return Phase.PHASE_1
    for identifier in config.phase2.identifiers:
        if identifier in description:
            return Phase.PHASE_2
    return None


def leader_key(lead: LeadInfo, drive_config: DriveConfig | None = None) -> LeaderKey:
    suffix = (drive_config or DriveConfig()).build_file_suffix
    return LeaderKey(
        company=lead.company_name,
        leader_name=lead.full_name,
        file_name=f"{lead.full_name} - {suffix}",
    )


def best_effort(label: str, func: Callable[[], T]) -> T | None:
    """Run a non-critical step; a failure is logged and discarded."""
    try:
        return func()
    except Exception as exc:
        logger.warning("Non-critical step failed (%s): %s", label, exc)
        return None


class PhaseProcessor:
    def __init__(self, config: AppConfig, store: ArtifactStore, link_client: LinkClient, ledger: EmailIndex) -> None:
        self.config = config
        self.store = store
        self.link_client = link_client
        self.ledger = ledger

    # Phase 1 ----------------------------------------------------------------

    def process_phase1(self, event: EventRecord) -> Phase1Outcome:
        """Create or update the leader's Build File for a Phase 1 session.

        The assessment link is minted only while the Build File has no login
        code, so an existing code is never replaced. Any failure propagates
        so the event stays unrecorded and is retried on the next batch.
        """
        lead = extract_lead_info(event, self.config.calendar.timezone)
        key = leader_key(lead, self.config.drive)

        artifact = self.store.find_artifact(key)
        created = artifact is None
        if artifact is not None:
            logger.info("Build File exists for %s, updating Phase 1 fields", lead.full_name)
            self._write_phase1_fields(artifact, lead)
            if not self._has_login_code(artifact):
                logger.info("Build File %s has no login code yet, minting one", artifact.artifact_id)
                self._store_assessment_link(artifact, lead)
        else:
            logger.info("Creating Build File %s", key.file_name)
            artifact = self.store.create_artifact(self.config.drive.template_id, key)
            self._write_phase1_fields(artifact, lead)
            self._store_assessment_link(artifact, lead)

        self._validate_phase1(artifact)
        return Phase1Outcome(lead=lead, artifact=artifact, created=created)

    def _write_phase1_fields(self, artifact: Artifact, lead: LeadInfo) -> None:
        section = self.config.phase1.sheet_name
        rows = self.config.phase1.rows
        self.store.set_field(artifact, section, rows["date"], lead.formatted_date)
        self.store.set_field(artifact, section, rows["time"], lead.formatted_time)
        self.store.set_field(artifact, section, rows["name"], lead.full_name)
        self.store.set_field(artifact, section, rows["zoom_link"], lead.zoom_link)

    def _has_login_code(self, artifact: Artifact) -> bool:
        row = self.config.assessment_api.phase1_login_code_row
        return bool(str(self.store.get_field(artifact, self.config.phase1.sheet_name, row) or "").strip())

    def _store_assessment_link(self, artifact: Artifact, lead: LeadInfo) -> None:
        api = self.config.assessment_api
        link = self.link_client.create_link(lead)
        section = self.config.phase1.sheet_name
        if api.store_full_url:
            self.store.set_field(artifact, section, api.link_row, link.response_url)
        self.store.set_field(artifact, section, api.phase1_login_code_row, link.login_code)
        logger.info("Stored login code for %s", lead.full_name)
        best_effort(
            "copy login code to Phase 2",
            lambda: self.store.set_field(
                artifact, self.config.phase2.sheet_name, api.phase2_login_code_row, link.login_code
            ),
        )

    def _validate_phase1(self, artifact: Artifact) -> None:
        section = self.config.phase1.sheet_name
        rows = self.config.phase1.rows
        checks = {
            "date": rows["date"],
            "time": rows["time"],
            "name": rows["name"],
            "meeting link": rows["zoom_link"],
            "login code": self.config.assessment_api.phase1_login_code_row,
        }
        missing = [
            label
            for label, row in checks.items()
            if not str(self.store.get_field(artifact, section, row) or "").strip()
        ]
        if missing:
            raise ValidationError(artifact.artifact_id, missing)
        logger.info("Build File %s passed validation", artifact.artifact_id)

    # Phase 2 ----------------------------------------------------------------

    def resolve_phase2_artifact(self, lead: LeadInfo) -> Artifact | None:
        record = self.ledger.find_by_email(lead.email, lead.full_name)
        if record is not None and record.build_artifact_id:
            artifact = self.store.get_artifact_by_id(record.build_artifact_id)
            if artifact is not None:
                logger.info("Resolved Build File for %s via ledger", lead.full_name)
                return artifact
            logger.warning(
                "Ledger points at missing Build File %s for %s, searching folders",
                record.build_artifact_id,
                lead.email,
            )
        artifact = self.store.find_artifact(leader_key(lead, self.config.drive))
        if artifact is not None:
            logger.info("Resolved Build File for %s via folder search", lead.full_name)
        return artifact

    def process_phase2(self, event: EventRecord) -> LeadInfo:
        lead = extract_lead_info(event, self.config.calendar.timezone)
        artifact = self.resolve_phase2_artifact(lead)
        if artifact is None:
            raise ArtifactNotFoundError(
                f"No Build File found for {lead.full_name} ({lead.email}); Phase 1 may not have completed"
            )

        section = self.config.phase2.sheet_name
        rows = self.config.phase2.rows
        self.store.set_field(artifact, section, rows["date"], lead.formatted_date)
        self.store.set_field(artifact, section, rows["time"], lead.formatted_time)
        self.store.set_field(artifact, section, rows["zoom_link"], lead.zoom_link)
        best_effort("copy login code from Phase 1", lambda: self._copy_login_code(artifact))
        logger.info("Updated Phase 2 fields for %s", lead.full_name)
        return lead

    def _copy_login_code(self, artifact: Artifact) -> None:
        api = self.config.assessment_api
        login_code = self.store.get_field(artifact, self.config.phase1.sheet_name, api.phase1_login_code_row)
        if login_code:
            self.store.set_field(artifact, self.config.phase2.sheet_name, api.phase2_login_code_row, login_code)
