"""Domain errors and failure typing."""


class PipelineError(Exception):
    """Base class for resolution and enrichment failures."""

    error_code = "PIPELINE_ERROR"


class ConfigError(PipelineError):
    """Raised for invalid or missing configuration."""

    error_code = "CONFIG_ERROR"


class ContractError(PipelineError):
    """Raised when a data contract is broken by an input or an operation."""

    error_code = "CONTRACT_ERROR"


class InvalidCoordinateError(ContractError):
    """Raised for points outside the valid longitude/latitude ranges."""

    error_code = "INVALID_COORDINATE"


class MergeDataLossError(ContractError):
    """Raised when a merge would drop or alter a pre-existing category."""

    error_code = "MERGE_DATA_LOSS"

    def __init__(self, message: str, missing_keys: list[str] | None = None) -> None:
        super().__init__(message)
        self.missing_keys = missing_keys or []


class StageError(PipelineError):
    """Raised for failures that should halt the current run."""

    error_code = "STAGE_ERROR"


class SourceReadError(StageError):
    """Raised when the point source table cannot be read."""

    error_code = "SOURCE_READ_ERROR"
