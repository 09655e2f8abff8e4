from __future__ import annotations


class AutomationError(Exception):
    """Base class for failures that abort processing of a single event."""


class ExtractionError(AutomationError):
    """Required lead fields (first name, last name, email) are missing."""


class ArtifactStoreError(AutomationError):
    """Drive/Sheets storage call failed."""


class ArtifactCreationError(ArtifactStoreError):
    """Folder creation or template copy failed."""


class LinkGenerationError(AutomationError):
    """The assessment-link API did not return a usable login code."""


class ValidationError(AutomationError):
    """A Build File is missing critical Phase 1 fields after it was written."""

    def __init__(self, artifact_id: str, missing: list[str]) -> None:
        self.artifact_id = artifact_id
        self.missing = list(missing)
        super().__init__(f"Build File {artifact_id} is missing critical fields: {', '.join(self.missing)}")


class ArtifactNotFoundError(AutomationError):
    """No Build File could be resolved for a Phase 2 session."""


class LedgerUnavailableError(Exception):
    """The ledger backing store could not be written."""


class ConfigError(Exception):
    """The YAML config file is not a readable mapping."""
