import tempfile
import unittest
from pathlib import Path
from unittest import mock

from fakes import (
    PHASE1_DESCRIPTION,
    PHASE2_DESCRIPTION,
    FakeArtifactStore,
    FakeLinkClient,
    make_config,
    make_event,
    make_lead,
)
from strongteams.errors import ArtifactNotFoundError, ExtractionError, LinkGenerationError, ValidationError
from strongteams.ledger import ProcessedEventsTracker
from strongteams.models import Phase
from strongteams.phases import PhaseProcessor, best_effort, classify_event, leader_key


class ClassifyEventTests(unittest.TestCase):
    def test_phase1_and_phase2_identifiers(self) -> None:
        config = make_config()
        self.assertEqual(classify_event(make_event(description=PHASE1_DESCRIPTION), config), Phase.PHASE_1)
        self.assertEqual(classify_event(make_event(description=PHASE2_DESCRIPTION), config), Phase.PHASE_2)
        self.assertIsNone(classify_event(make_event(description="Dentist"), config))

    def test_event_matching_both_sets_is_phase1(self) -> None:
        # Matching both keyword sets is undefined upstream; Phase 1 is checked first.
        event = make_event(description="Phase 2 follow-up booked as Phase 1 Email: a@b.com")
        self.assertEqual(classify_event(event, make_config()), Phase.PHASE_1)

    def test_default_identifiers(self) -> None:
        config = make_config(phase1={"identifiers": []})
        event = make_event(description="60 Minute Phase 1 - Leader Only")
        self.assertEqual(classify_event(event, config), Phase.PHASE_1)


class LeaderKeyTests(unittest.TestCase):
    def test_file_name_is_name_derived(self) -> None:
        key = leader_key(make_lead("Jane Doe", "jane@acme.com", "Acme"))
        self.assertEqual(key.company, "Acme")
        self.assertEqual(key.leader_name, "Jane Doe")
        self.assertEqual(key.file_name, "Jane Doe - Strong Teams Build File")


class BestEffortTests(unittest.TestCase):
    def test_failure_is_logged_and_discarded(self) -> None:
        def boom() -> None:
            raise RuntimeError("sheet missing")

        with self.assertLogs("strongteams.phases", level="WARNING") as logs:
            self.assertIsNone(best_effort("copy", boom))
        self.assertIn("copy", logs.output[0])

    def test_returns_value(self) -> None:
        self.assertEqual(best_effort("value", lambda: 3), 3)


class PhaseProcessorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.addCleanup(self.temp_dir.cleanup)
        self.config = make_config()
        self.store = FakeArtifactStore()
        self.link_client = FakeLinkClient()
        self.ledger = ProcessedEventsTracker(str(Path(self.temp_dir.name) / "ledger.db"))
        self.processor = PhaseProcessor(self.config, self.store, self.link_client, self.ledger)

    def cell(self, artifact_id: str, section: str, row: int) -> str:
        return str(self.store.cells.get((artifact_id, section, row), ""))

    def test_phase1_creates_build_file_and_stores_login_code(self) -> None:
        outcome = self.processor.process_phase1(make_event())

        self.assertTrue(outcome.created)
        self.assertEqual(outcome.artifact.name, "A B - Strong Teams Build File")
        self.assertEqual(outcome.lead.email, "a@b.com")
        self.assertEqual(len(self.link_client.calls), 1)
        file_id = outcome.artifact.artifact_id
        self.assertEqual(self.cell(file_id, "Phase 1 Settings", 2), "January 10, 2025")
        self.assertEqual(self.cell(file_id, "Phase 1 Settings", 3), "6:00 PM UTC")
        self.assertEqual(self.cell(file_id, "Phase 1 Settings", 7), "A B")
        self.assertEqual(self.cell(file_id, "Phase 1 Settings", 9), "https://zoom/x")
        self.assertEqual(self.cell(file_id, "Phase 1 Settings", 8), "LOGIN-1")
        self.assertEqual(self.cell(file_id, "Phase 2 Settings", 8), "LOGIN-1")
        self.assertEqual(self.cell(file_id, "Phase 1 Settings", 4), "")

    def test_full_url_stored_only_when_enabled(self) -> None:
        config = make_config(assessment_api={"store_full_url": True})
        processor = PhaseProcessor(config, self.store, self.link_client, self.ledger)
        outcome = processor.process_phase1(make_event())
        self.assertEqual(
            self.cell(outcome.artifact.artifact_id, "Phase 1 Settings", 4),
            "https://assessment.example.com/LOGIN-1",
        )

    def test_second_phase1_run_updates_without_new_link(self) -> None:
        first = self.processor.process_phase1(make_event())
        self.link_client.login_code = "LOGIN-2"
        second = self.processor.process_phase1(make_event(location="https://zoom/y"))

        self.assertFalse(second.created)
        self.assertEqual(second.artifact.artifact_id, first.artifact.artifact_id)
        self.assertEqual(self.store.created, 1)
        self.assertEqual(len(self.link_client.calls), 1)
        file_id = first.artifact.artifact_id
        self.assertEqual(self.cell(file_id, "Phase 1 Settings", 9), "https://zoom/y")
        self.assertEqual(self.cell(file_id, "Phase 1 Settings", 8), "LOGIN-1")

    def test_existing_build_file_without_login_code_gets_one(self) -> None:
        self.link_client.fail = True
        with self.assertRaises(LinkGenerationError):
            self.processor.process_phase1(make_event())
        self.link_client.fail = False

        outcome = self.processor.process_phase1(make_event())

        self.assertFalse(outcome.created)
        self.assertEqual(self.store.created, 1)
        self.assertEqual(len(self.link_client.calls), 2)
        file_id = outcome.artifact.artifact_id
        self.assertEqual(self.cell(file_id, "Phase 1 Settings", 8), "LOGIN-1")
        self.assertEqual(self.cell(file_id, "Phase 2 Settings", 8), "LOGIN-1")

    def test_link_failure_propagates(self) -> None:
        self.link_client.fail = True
        with self.assertRaises(LinkGenerationError):
            self.processor.process_phase1(make_event())

    def test_validation_fails_when_login_code_missing(self) -> None:
        self.link_client.login_code = ""
        with self.assertRaises(ValidationError) as ctx:
            self.processor.process_phase1(make_event())
        self.assertEqual(ctx.exception.missing, ["login code"])

    def test_validation_fails_when_meeting_link_missing(self) -> None:
        with self.assertRaises(ValidationError) as ctx:
            self.processor.process_phase1(make_event(location=""))
        self.assertIn("meeting link", ctx.exception.missing)

    def test_phase2_copy_failure_does_not_fail_phase1(self) -> None:
        self.store.fail_sections.add("Phase 2 Settings")
        outcome = self.processor.process_phase1(make_event())
        self.assertTrue(outcome.created)

    def test_missing_lead_fields_raise_extraction_error(self) -> None:
        with self.assertRaises(ExtractionError):
            self.processor.process_phase1(make_event(description="Phase 1 First name: A Last name: B"))
        self.assertEqual(self.store.created, 0)

    def test_phase2_resolves_via_ledger(self) -> None:
        phase1_event = make_event()
        outcome = self.processor.process_phase1(phase1_event)
        self.ledger.mark_processed(
            phase1_event,
            Phase.PHASE_1,
            outcome.lead,
            build_artifact_id=outcome.artifact.artifact_id,
            build_folder_id=outcome.artifact.folder_id,
        )

        with mock.patch.object(self.store, "find_artifact", wraps=self.store.find_artifact) as find_artifact:
            lead = self.processor.process_phase2(make_event(uid="e2", description=PHASE2_DESCRIPTION))

        find_artifact.assert_not_called()
        self.assertEqual(lead.full_name, "A B")
        file_id = outcome.artifact.artifact_id
        self.assertEqual(self.cell(file_id, "Phase 2 Settings", 2), "January 10, 2025")
        self.assertEqual(self.cell(file_id, "Phase 2 Settings", 9), "https://zoom/x")
        self.assertEqual(self.cell(file_id, "Phase 2 Settings", 8), "LOGIN-1")

    def test_phase2_falls_back_to_folder_search_when_ledger_empty(self) -> None:
        outcome = self.processor.process_phase1(make_event())
        self.ledger.reset()

        lead = self.processor.process_phase2(make_event(uid="e2", description=PHASE2_DESCRIPTION))

        self.assertEqual(lead.email, "a@b.com")
        self.assertEqual(self.cell(outcome.artifact.artifact_id, "Phase 2 Settings", 9), "https://zoom/x")

    def test_phase2_falls_back_when_ledger_artifact_is_gone(self) -> None:
        outcome = self.processor.process_phase1(make_event())
        self.ledger.mark_processed(make_event(), Phase.PHASE_1, outcome.lead, build_artifact_id="file-deleted")

        artifact = self.processor.resolve_phase2_artifact(outcome.lead)

        self.assertIsNotNone(artifact)
        self.assertEqual(artifact.artifact_id, outcome.artifact.artifact_id)

    def test_phase2_without_build_file_raises(self) -> None:
        with self.assertRaises(ArtifactNotFoundError):
            self.processor.process_phase2(make_event(uid="e2", description=PHASE2_DESCRIPTION))


if __name__ == "__main__":
    unittest.main()
