"""
Exception hierarchy for the analytics engine.

Configuration and missing-column errors also subclass ValueError so that
callers written against plain ``ValueError`` keep working.
"""


class AnalyticsError(Exception):
    """Base class for every error raised by portfolio_risk."""


class ConfigurationError(AnalyticsError, ValueError):
    """A rule, model, scenario set or report definition is structurally invalid."""


class MissingColumnsError(AnalyticsError, ValueError):
    """The record source lacks columns a report or the store requires."""

    def __init__(self, missing, context=None):
        self.missing = list(missing)
        message = f"Missing required columns: {self.missing}"
        if context:
            message = f"{message} ({context})"
        super().__init__(message)


class ResourceLimitExceeded(AnalyticsError, RuntimeError):
    """The input exceeds the configured maximum number of rows."""

    def __init__(self, rows: int, limit: int):
        self.rows = rows
        self.limit = limit
        super().__init__(f"Input has more than {limit:,} rows (read {rows:,}); "
                         f"raise engine.max_rows to process it")
