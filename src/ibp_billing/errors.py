"""Error taxonomy for the IBP billing service.

Configuration inconsistencies (unknown region or service) are not raised:
they are logged and the offending pair is skipped. Everything below
represents a failed operation that callers must handle.
"""


class BillingError(Exception):
    """Base class for all billing engine errors."""


class ConfigurationError(BillingError):
    """The configuration source is missing or cannot be parsed."""


class EventLogUnavailableError(BillingError):
    """The event log could not be queried, so downtime is unknown.

    Callers must surface this as "no data" rather than assuming 100% uptime.
    """


class ReportGenerationError(BillingError):
    """One or more artifacts of a monthly generation run failed to write.

    Attributes:
        failed_artifacts: Names of the artifacts that could not be written.
    """

    def __init__(self, message: str, failed_artifacts: list[str] | None = None) -> None:
        super().__init__(message)
        self.failed_artifacts = failed_artifacts or []
