"""Exception hierarchy for modelcycle.

Every exception carries a human-readable message plus structured context so it
can be logged with structlog without losing detail.

Decision outcomes (insufficient data, failed validation, hold-for-approval) are
NOT exceptions: they are returned as verdict objects and recorded in the audit
log. Only conditions the orchestrator cannot recover from locally propagate to
the external caller.

Usage:
    from modelcycle.exceptions import StoreUnavailableError

    try:
        orchestrator.trigger_retraining(["content_performance"])
    except StoreUnavailableError as e:
        logger.error("trigger_failed", error=str(e), context=e.context)
"""

from __future__ import annotations

from typing import Any


class ModelCycleError(Exception):
    """Base exception for all modelcycle errors.

    Attributes:
        message: Human-readable error message
        context: Additional context for debugging (dict)
        original_error: Original exception if wrapped
    """

    def __init__(
        self,
        message: str,
        *,
        context: dict[str, Any] | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}
        self.original_error = original_error

    def __str__(self) -> str:
        """Format exception with context for logging."""
        base = self.message
        if self.context:
            ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base = f"{base} ({ctx_str})"
        if self.original_error:
            base = f"{base} [caused by: {type(self.original_error).__name__}]"
        return base

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(message={self.message!r}, context={self.context!r})"


# =============================================================================
# Configuration Errors
# =============================================================================


class ConfigurationError(ModelCycleError):
    """Raised when lifecycle configuration is malformed.

    Covers invalid environment variables, invalid per-family overrides and
    unreadable family configuration files.
    """

    def __init__(
        self,
        message: str,
        *,
        setting: str | None = None,
        expected: str | None = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.get("context", {})
        if setting:
            context["setting"] = setting
        if expected:
            context["expected"] = expected
        kwargs["context"] = context
        super().__init__(message, **kwargs)


# =============================================================================
# Store Errors
# =============================================================================


class StoreError(ModelCycleError):
    """Base class for durable store errors."""


class StoreUnavailableError(StoreError):
    """Raised when the store cannot complete a unit of work after local retries.

    The failed unit of work has been rolled back: no partial state transition
    is ever committed.
    """


class RecordNotFoundError(StoreError):
    """Raised when a family, job or version does not exist."""

    def __init__(
        self,
        message: str,
        *,
        entity_type: str | None = None,
        entity_id: str | int | None = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.get("context", {})
        if entity_type:
            context["entity_type"] = entity_type
        if entity_id is not None:
            context["entity_id"] = str(entity_id)
        kwargs["context"] = context
        super().__init__(message, **kwargs)


# =============================================================================
# Lifecycle Errors
# =============================================================================


class LifecycleError(ModelCycleError):
    """Base class for lifecycle rule violations."""


class AlreadyInProgressError(LifecycleError):
    """Raised when a family already has an active trigger or non-terminal job.

    The trigger coordinator converts this into a ``Rejected(already_active)``
    result; callers of the public API never see it raised.
    """

    def __init__(
        self,
        message: str,
        *,
        family_id: str | None = None,
        active_id: str | None = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.get("context", {})
        if family_id:
            context["family_id"] = family_id
        if active_id:
            context["active_id"] = active_id
        kwargs["context"] = context
        super().__init__(message, **kwargs)


class InvalidStateTransitionError(LifecycleError):
    """Raised when an operation violates the job or version state machine.

    Example: approving a candidate that was already rejected.
    """

    def __init__(
        self,
        message: str,
        *,
        entity_id: str | None = None,
        current_state: str | None = None,
        attempted_state: str | None = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.get("context", {})
        if entity_id:
            context["entity_id"] = entity_id
        if current_state:
            context["current_state"] = current_state
        if attempted_state:
            context["attempted_state"] = attempted_state
        kwargs["context"] = context
        super().__init__(message, **kwargs)


class DeploymentConflictError(LifecycleError):
    """Raised when the champion pointer changed concurrently twice in a row."""

    def __init__(
        self,
        message: str,
        *,
        family_id: str | None = None,
        version_id: str | None = None,
        **kwargs: Any,
    ) -> None:
        context = kwargs.get("context", {})
        if family_id:
            context["family_id"] = family_id
        if version_id:
            context["version_id"] = version_id
        kwargs["context"] = context
        super().__init__(message, **kwargs)


# =============================================================================
# Training Operation Errors
# =============================================================================


class TrainingError(ModelCycleError):
    """Base class for errors raised by training operation adapters."""


class TrainingTransientFailure(TrainingError):
    """Transient training failure (timeout, backend hiccup). Retried with backoff."""


class TrainingFatalFailure(TrainingError):
    """Non-retryable training failure (e.g. malformed input data). Terminal."""
