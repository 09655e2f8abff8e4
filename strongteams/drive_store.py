from __future__ import annotations

import logging
from typing import Any

from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from strongteams.errors import ArtifactCreationError, ArtifactStoreError
from strongteams.models import Artifact, DriveConfig, LeaderKey

logger = logging.getLogger(__name__)

SCOPES = [
    "https://www.googleapis.com/auth/drive",
    "https://www.googleapis.com/auth/spreadsheets",
]
FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
SPREADSHEET_MIME_TYPE = "application/vnd.google-apps.spreadsheet"
VALUE_COLUMN = "B"


def _quote(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


def _status(exc: HttpError) -> int | None:
    return getattr(exc.resp, "status", None)


class DriveArtifactStore:
    """Build Files as Google Sheets inside ``root / company / leader`` folders."""

    def __init__(self, config: DriveConfig, drive_service: Any = None, sheets_service: Any = None) -> None:
        self.config = config
        self._drive = drive_service
        self._sheets = sheets_service

    def _credentials(self) -> service_account.Credentials:
        if not self.config.credentials_file:
            raise ArtifactStoreError("Drive credentials_file is not configured.")
        return service_account.Credentials.from_service_account_file(self.config.credentials_file, scopes=SCOPES)

    @property
    def drive(self) -> Any:
        if self._drive is None:
            self._drive = build("drive", "v3", credentials=self._credentials(), cache_discovery=False)
        return self._drive

    @property
    def sheets(self) -> Any:
        if self._sheets is None:
            self._sheets = build("sheets", "v4", credentials=self._credentials(), cache_discovery=False)
        return self._sheets

    @staticmethod
    def _to_artifact(item: dict[str, Any], folder_id: str = "") -> Artifact:
        parents = item.get("parents") or []
        return Artifact(
            artifact_id=str(item["id"]),
            name=str(item.get("name", "")),
            folder_id=folder_id or (str(parents[0]) if parents else ""),
            url=str(item.get("webViewLink", "")),
        )

    # Folder tree ------------------------------------------------------------

    def _find_child(self, parent_id: str, name: str, mime_type: str | None = None) -> dict[str, Any] | None:
        query = f"'{_quote(parent_id)}' in parents and name = '{_quote(name)}' and trashed = false"
        if mime_type:
            query += f" and mimeType = '{mime_type}'"
        response = (
            self.drive.files()
            .list(
                q=query,
                fields="files(id, name, parents, webViewLink)",
                pageSize=10,
                supportsAllDrives=True,
                includeItemsFromAllDrives=True,
            )
            .execute()
        )
        files = response.get("files", [])
        if len(files) > 1:
            logger.warning("Found %d items named %r in folder %s, using the first", len(files), name, parent_id)
        return files[0] if files else None

    def _get_or_create_folder(self, parent_id: str, name: str) -> str:
        existing = self._find_child(parent_id, name, FOLDER_MIME_TYPE)
        if existing:
            return str(existing["id"])
        created = (
            self.drive.files()
            .create(
                body={"name": name, "mimeType": FOLDER_MIME_TYPE, "parents": [parent_id]},
                fields="id",
                supportsAllDrives=True,
            )
            .execute()
        )
        logger.info("Created folder %s", name)
        return str(created["id"])

    # Lookup -----------------------------------------------------------------

    def find_artifact(self, key: LeaderKey) -> Artifact | None:
        try:
            company = self._find_child(self.config.root_folder_id, key.company, FOLDER_MIME_TYPE)
            if company is None:
                return None
            leader = self._find_child(str(company["id"]), key.leader_name, FOLDER_MIME_TYPE)
            if leader is None:
                return None
            item = self._find_child(str(leader["id"]), key.file_name, SPREADSHEET_MIME_TYPE)
        except HttpError as exc:
            raise ArtifactStoreError(f"Build File lookup failed for {key.file_name}: {exc}") from exc
        if item is None:
            return None
        return self._to_artifact(item, folder_id=str(leader["id"]))

    def get_artifact_by_id(self, artifact_id: str) -> Artifact | None:
        try:
            item = (
                self.drive.files()
                .get(fileId=artifact_id, fields="id, name, parents, trashed, webViewLink", supportsAllDrives=True)
                .execute()
            )
        except HttpError as exc:
            if _status(exc) == 404:
                return None
            raise ArtifactStoreError(f"Could not fetch Build File {artifact_id}: {exc}") from exc
        if item.get("trashed"):
            return None
        return self._to_artifact(item)

    # Creation ---------------------------------------------------------------

    def create_artifact(self, template_id: str, key: LeaderKey) -> Artifact:
        if not template_id:
            raise ArtifactCreationError("Build File template_id is not configured.")
        try:
            company_id = self._get_or_create_folder(self.config.root_folder_id, key.company)
            leader_id = self._get_or_create_folder(company_id, key.leader_name)
            copied = (
                self.drive.files()
                .copy(
                    fileId=template_id,
                    body={"name": key.file_name, "parents": [leader_id]},
                    fields="id, name, parents, webViewLink",
                    supportsAllDrives=True,
                )
                .execute()
            )
        except HttpError as exc:
            raise ArtifactCreationError(f"Failed to create Build File {key.file_name}: {exc}") from exc
        logger.info("Created Build File %s", key.file_name)
        return self._to_artifact(copied, folder_id=leader_id)

    # Cells ------------------------------------------------------------------

    @staticmethod
    def _cell(section: str, row: int) -> str:
        return f"'{section}'!{VALUE_COLUMN}{int(row)}"

    def get_field(self, artifact: Artifact, section: str, row: int) -> str:
        try:
            response = (
                self.sheets.spreadsheets()
                .values()
                .get(spreadsheetId=artifact.artifact_id, range=self._cell(section, row))
                .execute()
            )
        except HttpError as exc:
            raise ArtifactStoreError(f"Could not read {section} row {row} of {artifact.artifact_id}: {exc}") from exc
        values = response.get("values") or [[]]
        first_row = values[0] if values else []
        return str(first_row[0]) if first_row else ""

    def set_field(self, artifact: Artifact, section: str, row: int, value: Any) -> None:
        try:
            (
                self.sheets.spreadsheets()
                .values()
                .update(
                    spreadsheetId=artifact.artifact_id,
                    range=self._cell(section, row),
                    valueInputOption="USER_ENTERED",
                    body={"values": [["" if value is None else value]]},
                )
                .execute()
            )
        except HttpError as exc:
            raise ArtifactStoreError(f"Could not write {section} row {row} of {artifact.artifact_id}: {exc}") from exc
