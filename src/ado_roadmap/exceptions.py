"""Exception hierarchy for ADO Roadmap."""


class RoadmapError(Exception):
    """Base exception for roadmap errors."""

    pass


class ConfigNotFoundError(RoadmapError):
    """Configuration file not found."""

    pass


class InvalidConfigError(RoadmapError):
    """Configuration is invalid."""

    pass


class ValidationError(RoadmapError):
    """Request input is malformed (bad id, bad date, missing field)."""

    pass


class AdoAuthError(RoadmapError):
    """Azure DevOps authentication failed."""

    pass


class AdoConnectionError(RoadmapError):
    """Cannot connect to Azure DevOps."""

    pass


class AdoRateLimitError(RoadmapError):
    """Azure DevOps kept rejecting requests after all retries."""

    pass


class AdoApiError(RoadmapError):
    """Azure DevOps returned a non-retryable error."""

    pass


class WorkItemNotFoundError(RoadmapError):
    """Work item does not exist or is not visible."""

    pass


class AllUnitsFailedError(RoadmapError):
    """Every team or item in a fan-out aggregation failed."""

    pass
