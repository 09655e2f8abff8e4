import unittest
from unittest import mock

import httplib2
from googleapiclient.errors import HttpError

from strongteams.drive_store import FOLDER_MIME_TYPE, DriveArtifactStore
from strongteams.errors import ArtifactCreationError, ArtifactStoreError
from strongteams.models import Artifact, DriveConfig, LeaderKey

KEY = LeaderKey(company="Acme", leader_name="Jane Doe", file_name="Jane Doe - Strong Teams Build File")
ARTIFACT = Artifact(artifact_id="sheet-1", name=KEY.file_name, folder_id="leader-1")


def _http_error(status: int) -> HttpError:
    return HttpError(httplib2.Response({"status": status}), b"{}")


class DriveArtifactStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self.drive = mock.MagicMock()
        self.sheets = mock.MagicMock()
        self.store = DriveArtifactStore(
            DriveConfig(root_folder_id="root", template_id="template"),
            drive_service=self.drive,
            sheets_service=self.sheets,
        )

    def test_find_artifact_walks_company_and_leader_folders(self) -> None:
        self.drive.files.return_value.list.return_value.execute.side_effect = [
            {"files": [{"id": "company-1", "name": "Acme"}]},
            {"files": [{"id": "leader-1", "name": "Jane Doe"}]},
            {"files": [{"id": "sheet-1", "name": KEY.file_name, "webViewLink": "https://docs/sheet-1"}]},
        ]

        artifact = self.store.find_artifact(KEY)

        self.assertEqual(artifact, Artifact("sheet-1", KEY.file_name, "leader-1", "https://docs/sheet-1"))
        first_query = self.drive.files.return_value.list.call_args_list[0][1]["q"]
        self.assertIn("'root' in parents", first_query)
        self.assertIn(f"mimeType = '{FOLDER_MIME_TYPE}'", first_query)

    def test_find_artifact_missing_company_folder(self) -> None:
        self.drive.files.return_value.list.return_value.execute.return_value = {"files": []}
        self.assertIsNone(self.store.find_artifact(KEY))

    def test_query_escapes_quotes(self) -> None:
        self.drive.files.return_value.list.return_value.execute.return_value = {"files": []}
        self.store.find_artifact(LeaderKey("O'Brien Co", "Pat O'Brien", "Pat O'Brien - Strong Teams Build File"))
        query = self.drive.files.return_value.list.call_args[1]["q"]
        self.assertIn("name = 'O\\'Brien Co'", query)

    def test_create_artifact_creates_folders_and_copies_template(self) -> None:
        files = self.drive.files.return_value
        files.list.return_value.execute.return_value = {"files": []}
        files.create.return_value.execute.side_effect = [{"id": "company-1"}, {"id": "leader-1"}]
        files.copy.return_value.execute.return_value = {"id": "sheet-1", "name": KEY.file_name}

        artifact = self.store.create_artifact("template", KEY)

        self.assertEqual(artifact.artifact_id, "sheet-1")
        self.assertEqual(artifact.folder_id, "leader-1")
        copy_kwargs = files.copy.call_args[1]
        self.assertEqual(copy_kwargs["fileId"], "template")
        self.assertEqual(copy_kwargs["body"], {"name": KEY.file_name, "parents": ["leader-1"]})

    def test_create_artifact_wraps_api_errors(self) -> None:
        files = self.drive.files.return_value
        files.list.return_value.execute.return_value = {"files": [{"id": "folder"}]}
        files.copy.return_value.execute.side_effect = _http_error(403)
        with self.assertRaises(ArtifactCreationError):
            self.store.create_artifact("template", KEY)

    def test_create_artifact_requires_template(self) -> None:
        with self.assertRaises(ArtifactCreationError):
            self.store.create_artifact("", KEY)

    def test_get_artifact_by_id(self) -> None:
        get = self.drive.files.return_value.get.return_value
        get.execute.return_value = {"id": "sheet-1", "name": "n", "parents": ["leader-1"], "trashed": False}
        self.assertEqual(self.store.get_artifact_by_id("sheet-1").folder_id, "leader-1")

        get.execute.return_value = {"id": "sheet-1", "name": "n", "trashed": True}
        self.assertIsNone(self.store.get_artifact_by_id("sheet-1"))

        get.execute.side_effect = _http_error(404)
        self.assertIsNone(self.store.get_artifact_by_id("sheet-1"))

        get.execute.side_effect = _http_error(500)
        with self.assertRaises(ArtifactStoreError):
            self.store.get_artifact_by_id("sheet-1")

    def test_get_and_set_field_use_column_b(self) -> None:
        values = self.sheets.spreadsheets.return_value.values.return_value
        values.get.return_value.execute.return_value = {"values": [["LOGIN-1"]]}

        self.assertEqual(self.store.get_field(ARTIFACT, "Phase 1 Settings", 8), "LOGIN-1")
        self.assertEqual(values.get.call_args[1]["range"], "'Phase 1 Settings'!B8")

        self.store.set_field(ARTIFACT, "Phase 2 Settings", 2, "January 10, 2025")
        update_kwargs = values.update.call_args[1]
        self.assertEqual(update_kwargs["spreadsheetId"], "sheet-1")
        self.assertEqual(update_kwargs["range"], "'Phase 2 Settings'!B2")
        self.assertEqual(update_kwargs["body"], {"values": [["January 10, 2025"]]})

    def test_empty_cell_reads_as_empty_string(self) -> None:
        values = self.sheets.spreadsheets.return_value.values.return_value
        values.get.return_value.execute.return_value = {"range": "'Phase 1 Settings'!B8"}
        self.assertEqual(self.store.get_field(ARTIFACT, "Phase 1 Settings", 8), "")

    def test_missing_credentials(self) -> None:
        store = DriveArtifactStore(DriveConfig())
        with self.assertRaises(ArtifactStoreError):
            store.get_field(ARTIFACT, "Phase 1 Settings", 2)


if __name__ == "__main__":
    unittest.main()
