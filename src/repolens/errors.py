"""Error taxonomy for the analysis pipeline.

Every error carries a caller-safe ``message``. Raw diagnostics (git stderr,
driver errors, tracebacks) go into ``diagnostic`` and are only exposed when
the service runs in debug mode.
"""

from __future__ import annotations


class RepoLensError(Exception):
    """Base class for all RepoLens errors."""

    def __init__(self, message: str, diagnostic: str = ""):
        super().__init__(message)
        self.message = message
        self.diagnostic = diagnostic

    def public_message(self, debug: bool = False) -> str:
        if debug and self.diagnostic:
            return f"{self.message}: {self.diagnostic}"
        return self.message


class ValidationError(RepoLensError):
    """Malformed analysis input (bad URL, depth out of range)."""


class CloneFailure(RepoLensError):
    """Repository could not be fetched, even after the branch fallback."""


class WalkFailure(RepoLensError):
    """The fetched tree could not be traversed."""


class PartialExtractionFailure(RepoLensError):
    """A single manifest could not be parsed."""

    def __init__(self, manifest: str, diagnostic: str = ""):
        super().__init__(f"Could not parse manifest {manifest}", diagnostic)
        self.manifest = manifest


class EnrichmentFailure(RepoLensError):
    """The inference collaborator failed, timed out or returned garbage."""


class StorageFailure(RepoLensError):
    """A persistence read or write failed."""


class InvalidTransition(StorageFailure):
    """A status write would move a record backwards or out of a terminal state."""

    def __init__(self, analysis_id: str, current: str, target: str):
        super().__init__(
            f"Analysis {analysis_id} cannot move from {current} to {target}"
        )
        self.analysis_id = analysis_id
        self.current = current
        self.target = target


class AnalysisNotFound(RepoLensError):
    """No analysis with this id is visible to the caller."""

    def __init__(self, analysis_id: str):
        super().__init__("Analysis not found")
        self.analysis_id = analysis_id
