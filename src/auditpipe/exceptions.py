"""
exceptions.py: Error taxonomy for the audit pipeline

Configuration errors surface before any pipeline cycle runs. Invariant
violations are programming errors and are raised loudly. Filter and sink
errors are not represented here: they propagate to the caller as-is.
"""

from typing import Any, Dict, Optional


class AuditError(Exception):
    """Base exception for all audit pipeline errors."""


class ConfigurationError(AuditError):
    """Base exception for configuration-related errors."""

    def __init__(
        self,
        message: str,
        pipeline: Optional[str] = None,
        category: Optional[str] = None,
        value: Any = None,
        config_path: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize configuration error.

        Args:
            message: Error message
            pipeline: Name of the pipeline being configured
            category: Configuration section (e.g. "exclude_fields", "sinks")
            value: The offending value
            config_path: Path to the configuration file that caused the error
            details: Additional error details
        """
        self.message = message
        self.pipeline = pipeline
        self.category = category
        self.value = value
        self.config_path = config_path
        self.details = details or {}
        super().__init__(self._with_context(message))

    def _with_context(self, message: str) -> str:
        context = []
        if self.pipeline is not None:
            context.append(f"pipeline={self.pipeline!r}")
        if self.category is not None:
            context.append(f"category={self.category!r}")
        if self.value is not None:
            context.append(f"value={self.value!r}")
        if self.config_path is not None:
            context.append(f"file={self.config_path!r}")
        if not context:
            return message
        return f"{message} ({', '.join(context)})"

    def with_config_path(self, config_path: str) -> "ConfigurationError":
        """Attach the file the error came from and refresh the message."""
        self.config_path = config_path
        self.args = (self._with_context(self.message),)
        return self


class ConfigFileNotFoundError(ConfigurationError):
    """Raised when a required configuration file is not found."""

    def __init__(self, config_path: str):
        super().__init__("Configuration file not found", config_path=config_path)


class ConfigParseError(ConfigurationError):
    """Raised when configuration file cannot be parsed."""

    def __init__(self, config_path: str, parse_error: str):
        super().__init__(
            f"Failed to parse configuration file: {parse_error}",
            config_path=config_path,
            details={"parse_error": parse_error},
        )


class ConfigValidationError(ConfigurationError):
    """Raised when configuration validation fails."""


class InvariantViolationError(AuditError):
    """A pipeline invariant was broken by the calling code."""


class DuplicateRecordError(InvariantViolationError):
    """An entity was registered twice for the same operation type."""


class RecordNotFoundError(InvariantViolationError):
    """A record was removed from a changeset it does not belong to."""


class ChangesetSealedError(InvariantViolationError):
    """A changeset was handed to the processor after it was sealed."""


class PipelineStateError(AuditError):
    """A component was used in a way its current state does not allow."""
