"""Domain errors and failure typing."""


class PipelineError(Exception):
    """Base class for pipeline failures."""

    error_code = "PIPELINE_ERROR"


class ConfigError(PipelineError):
    """Raised for invalid or missing configuration."""

    error_code = "CONFIG_ERROR"


class StageError(PipelineError):
    """Raised for stage failures that are reported in the run summary."""

    error_code = "STAGE_ERROR"


class FetchError(StageError):
    error_code = "FETCH_ERROR"


class TransientFetchError(FetchError):
    """Timeouts, 5xx and rate-limit responses. Raised once retries are exhausted."""

    error_code = "TRANSIENT_FETCH_ERROR"


class FatalFetchError(FetchError):
    """Non-retryable fetch failure: 4xx, malformed URL, undecodable body."""

    error_code = "FATAL_FETCH_ERROR"


class FatalParseError(StageError):
    """A listing or payload that cannot be turned into an event."""

    error_code = "PARSE_ERROR"


class PersistenceError(StageError):
    """A catalog write failed; only the affected group is lost."""

    error_code = "PERSISTENCE_ERROR"


class AuthorizationError(PipelineError):
    error_code = "AUTHORIZATION_ERROR"


class GeoFilteredSkip(Exception):
    """Listing lies outside the configured region. Expected, never a failure."""

    error_code = "GEO_FILTERED"
