from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any


DEFAULT_PHASE1_IDENTIFIERS = [
    "60 Minute Phase 1 - Leader Only",
    "Phase 1 - Leader Only",
    "Phase 1 Coaching",
    "60 Minute Phase 1",
]
DEFAULT_PHASE2_IDENTIFIERS = [
    "90 Minute Phase 2 - Team Building",
    "Phase 2 - Team Building",
    "Phase 2 Team Building",
    "90 Minute Phase 2",
]


class Phase(str, enum.Enum):
    PHASE_1 = "Phase 1"
    PHASE_2 = "Phase 2"


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def _clean_list(values: Any) -> list[str]:
    if not isinstance(values, (list, tuple)):
        return []
    return [str(x).strip() for x in values if str(x).strip()]


def _clean_rows(data: Any, defaults: dict[str, int]) -> dict[str, int]:
    rows = dict(defaults)
    if isinstance(data, dict):
        for key, value in data.items():
            if key not in defaults:
                continue
            try:
                rows[key] = max(1, int(value))
            except (TypeError, ValueError):
                continue
    return rows


@dataclass(frozen=True)
class CalendarConfig:
    base_url: str = ""
    username: str = ""
    password: str = ""
    calendar_ids: list[str] = field(default_factory=list)
    lookback_hours: int = 1
    lookahead_hours: int = 2160
    timezone: str = "America/New_York"
    interval_seconds: int = 300

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalendarConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "")).strip(),
            username=str(data.get("username", "")).strip(),
            password=str(data.get("password", "")).strip(),
            calendar_ids=_clean_list(data.get("calendar_ids", [])),
            lookback_hours=max(0, int(data.get("lookback_hours", 1))),
            lookahead_hours=max(1, int(data.get("lookahead_hours", 2160))),
            timezone=str(data.get("timezone", "America/New_York")).strip() or "America/New_York",
            interval_seconds=max(30, int(data.get("interval_seconds", 300))),
        )


@dataclass(frozen=True)
class PhaseConfig:
    sheet_name: str
    identifiers: list[str]
    rows: dict[str, int]

    @classmethod
    def from_dict(
        cls,
        data: dict[str, Any] | None,
        *,
        default_sheet: str,
        default_identifiers: list[str],
        default_rows: dict[str, int],
    ) -> "PhaseConfig":
        data = data or {}
        identifiers = _clean_list(data.get("identifiers", default_identifiers))
        return cls(
            sheet_name=str(data.get("sheet_name", default_sheet)).strip() or default_sheet,
            identifiers=identifiers or list(default_identifiers),
            rows=_clean_rows(data.get("rows"), default_rows),
        )


PHASE1_DEFAULT_ROWS = {"date": 2, "time": 3, "name": 7, "zoom_link": 9}
PHASE2_DEFAULT_ROWS = {"date": 2, "time": 3, "zoom_link": 9}


def _phase1_config(data: dict[str, Any] | None) -> PhaseConfig:
    return PhaseConfig.from_dict(
        data,
        default_sheet="Phase 1 Settings",
        default_identifiers=DEFAULT_PHASE1_IDENTIFIERS,
        default_rows=PHASE1_DEFAULT_ROWS,
    )


def _phase2_config(data: dict[str, Any] | None) -> PhaseConfig:
    return PhaseConfig.from_dict(
        data,
        default_sheet="Phase 2 Settings",
        default_identifiers=DEFAULT_PHASE2_IDENTIFIERS,
        default_rows=PHASE2_DEFAULT_ROWS,
    )


@dataclass(frozen=True)
class DriveConfig:
    root_folder_id: str = ""
    template_id: str = ""
    credentials_file: str = ""
    build_file_suffix: str = "Strong Teams Build File"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "DriveConfig":
        data = data or {}
        return cls(
            root_folder_id=str(data.get("root_folder_id", "")).strip(),
            template_id=str(data.get("template_id", "")).strip(),
            credentials_file=str(data.get("credentials_file", "")).strip(),
            build_file_suffix=str(data.get("build_file_suffix", "Strong Teams Build File")).strip()
            or "Strong Teams Build File",
        )


@dataclass(frozen=True)
class AssessmentApiConfig:
    endpoint: str = "https://api.justrespond.com/api/v3/links?account_login=BASLERACADEMY"
    api_key: str = ""
    contact_email: str = ""
    tag_id: int = 349283
    report_view: str = "6217"
    response_base_url: str = "https://assessment.basleracademy.com/"
    store_full_url: bool = False
    link_row: int = 4
    phase1_login_code_row: int = 8
    phase2_login_code_row: int = 8
    timeout_seconds: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AssessmentApiConfig":
        data = data or {}
        defaults = cls()
        return cls(
            endpoint=str(data.get("endpoint", defaults.endpoint)).strip() or defaults.endpoint,
            api_key=str(data.get("api_key", "")).strip(),
            contact_email=str(data.get("contact_email", "")).strip(),
            tag_id=int(data.get("tag_id", defaults.tag_id)),
            report_view=str(data.get("report_view", defaults.report_view)).strip() or defaults.report_view,
            response_base_url=str(data.get("response_base_url", defaults.response_base_url)).strip()
            or defaults.response_base_url,
            store_full_url=bool(data.get("store_full_url", False)),
            link_row=max(1, int(data.get("link_row", 4))),
            phase1_login_code_row=max(1, int(data.get("phase1_login_code_row", 8))),
            phase2_login_code_row=max(1, int(data.get("phase2_login_code_row", 8))),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
        )


@dataclass(frozen=True)
class LedgerConfig:
    path: str = "data/ledger.db"
    enabled: bool = True
    retention_days: int = 120
    prune_interval_hours: int = 24

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LedgerConfig":
        data = data or {}
        return cls(
            path=str(data.get("path", "data/ledger.db")).strip() or "data/ledger.db",
            enabled=bool(data.get("enabled", True)),
            retention_days=max(1, int(data.get("retention_days", 120))),
            prune_interval_hours=max(1, int(data.get("prune_interval_hours", 24))),
        )


@dataclass(frozen=True)
class EmailConfig:
    smtp_host: str = ""
    smtp_port: int = 587
    username: str = ""
    password: str = ""
    use_tls: bool = True
    sender: str = ""
    admin_email: str = ""
    notify_on_success: bool = False
    notify_on_error: bool = True
    notify_on_pay_later: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "EmailConfig":
        data = data or {}
        return cls(
            smtp_host=str(data.get("smtp_host", "")).strip(),
            smtp_port=int(data.get("smtp_port", 587)),
            username=str(data.get("username", "")).strip(),
            password=str(data.get("password", "")).strip(),
            use_tls=bool(data.get("use_tls", True)),
            sender=str(data.get("sender", "")).strip(),
            admin_email=str(data.get("admin_email", "")).strip(),
            notify_on_success=bool(data.get("notify_on_success", False)),
            notify_on_error=bool(data.get("notify_on_error", True)),
            notify_on_pay_later=bool(data.get("notify_on_pay_later", True)),
        )


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    json: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        data = data or {}
        return cls(
            level=str(data.get("level", "INFO")).strip().upper() or "INFO",
            json=bool(data.get("json", True)),
        )


@dataclass(frozen=True)
class AppConfig:
    calendar: CalendarConfig = field(default_factory=CalendarConfig)
    phase1: PhaseConfig = field(default_factory=lambda: _phase1_config(None))
    phase2: PhaseConfig = field(default_factory=lambda: _phase2_config(None))
    drive: DriveConfig = field(default_factory=DriveConfig)
    assessment_api: AssessmentApiConfig = field(default_factory=AssessmentApiConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    email: EmailConfig = field(default_factory=EmailConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            calendar=CalendarConfig.from_dict(data.get("calendar")),
            phase1=_phase1_config(data.get("phase1")),
            phase2=_phase2_config(data.get("phase2")),
            drive=DriveConfig.from_dict(data.get("drive")),
            assessment_api=AssessmentApiConfig.from_dict(data.get("assessment_api")),
            ledger=LedgerConfig.from_dict(data.get("ledger")),
            email=EmailConfig.from_dict(data.get("email")),
            logging=LoggingConfig.from_dict(data.get("logging")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass(frozen=True)
class EventRecord:
    calendar_id: str
    uid: str
    summary: str = ""
    description: str = ""
    location: str = ""
    start: datetime | None = None
    end: datetime | None = None

    @property
    def event_id(self) -> str:
        return self.uid

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start"] = serialize_datetime(self.start)
        payload["end"] = serialize_datetime(self.end)
        return payload


@dataclass(frozen=True)
class LeadInfo:
    first_name: str
    last_name: str
    full_name: str
    email: str
    company_name: str
    phone_number: str = ""
    formatted_date: str = ""
    formatted_time: str = ""
    zoom_link: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class LeaderKey:
    company: str
    leader_name: str
    file_name: str


@dataclass(frozen=True)
class Artifact:
    artifact_id: str
    name: str
    folder_id: str = ""
    url: str = ""


@dataclass(frozen=True)
class AssessmentLink:
    login_code: str
    response_url: str


@dataclass(frozen=True)
class Phase1Outcome:
    lead: LeadInfo
    artifact: Artifact
    created: bool


@dataclass(frozen=True)
class TrackingStatus:
    processed: bool
    needs_update: bool
    row_ref: str | None = None


@dataclass(frozen=True)
class LedgerRecord:
    row_id: str
    event_id: str
    fingerprint: str
    phase: str
    leader_name: str = ""
    company: str = ""
    event_date: str = ""
    processed_at: str = ""
    last_updated_at: str = ""
    email: str = ""
    build_artifact_id: str = ""
    build_folder_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class LedgerStats:
    total: int = 0
    phase1_count: int = 0
    phase2_count: int = 0
    with_email_count: int = 0
    with_artifact_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class BatchResult:
    status: str
    message: str
    duration_ms: int
    trigger: str
    processed: int = 0
    already_processed: int = 0
    skipped: int = 0
    errors: int = 0
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "trigger": self.trigger,
            "processed": self.processed,
            "already_processed": self.already_processed,
            "skipped": self.skipped,
            "errors": self.errors,
            "run_at": serialize_datetime(self.run_at),
        }


def monitoring_window(now: datetime, lookback_hours: int, lookahead_hours: int) -> tuple[datetime, datetime]:
    now_utc = _ensure_tz(now)
    start = now_utc - timedelta(hours=max(0, lookback_hours))
    end = now_utc + timedelta(hours=max(1, lookahead_hours))
    return start, end
