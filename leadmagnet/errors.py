"""Error kinds raised at the assessment service boundaries."""


class LeadMagnetError(Exception):
    """Base class for errors surfaced by the assessment service."""


class ValidationError(LeadMagnetError):
    """Required input is missing or malformed; nothing was computed."""


class NotFoundError(LeadMagnetError):
    """Unknown or expired shareable token. The two cases are indistinguishable."""


class ReportLockedError(LeadMagnetError):
    """The report exists but the email gate has not been passed yet."""


class NarrativeGenerationError(LeadMagnetError):
    """The narrative service failed after retries or returned unusable content."""


class NarrativeParseError(NarrativeGenerationError):
    """The narrative response did not contain the expected JSON shape."""

    def __init__(self, message: str, raw: str = "") -> None:
        super().__init__(message)
        self.raw = raw


class PersistenceError(LeadMagnetError):
    """The primary assessment record could not be written."""
