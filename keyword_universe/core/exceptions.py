"""Custom exception classes for the keyword universe pipeline."""

from typing import Any


class KeywordUniverseError(Exception):
    """Base exception for all application errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


# Validation Errors
class InvalidRequestError(KeywordUniverseError):
    """Expansion request failed validation before any external call."""

    code = "invalid_request"

    def __init__(self, message: str, field: str | None = None) -> None:
        self.field = field
        super().__init__(message, {"field": field} if field else None)


# Pipeline Errors
class PipelineError(KeywordUniverseError):
    """Base class for pipeline errors."""

    pass


class StageError(PipelineError):
    """Fatal error raised by a pipeline stage.

    Carries the stage that failed, a stable error code and whether
    retrying the same run could succeed.
    """

    code = "stage_failed"
    retryable = True

    def __init__(
        self,
        stage: str,
        message: str,
        *,
        tier: str | None = None,
        details: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        self.stage = stage
        self.tier = tier
        self.cause = cause
        payload = {"stage": stage, "tier": tier, **(details or {})}
        if cause is not None:
            payload["cause"] = repr(cause)
        super().__init__(f"Stage {stage} failed: {message}", payload)


class InsufficientCandidatesError(StageError):
    """Generator produced fewer candidates than the tier minimum."""

    code = "insufficient_candidates"
    retryable = False

    def __init__(self, produced: int, required: int, *, tier: str = "dream100") -> None:
        self.produced = produced
        self.required = required
        super().__init__(
            "generation",
            f"produced {produced} candidates, at least {required} required",
            tier=tier,
            details={"produced": produced, "required": required},
        )


class EnrichmentFailedError(StageError):
    """Every metrics batch failed, no usable data exists."""

    code = "enrichment_failed"

    def __init__(
        self,
        total_batches: int,
        *,
        tier: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        self.total_batches = total_batches
        super().__init__(
            "enrichment",
            f"all {total_batches} metrics batches failed",
            tier=tier,
            details={"total_batches": total_batches},
            cause=cause,
        )


class RunCancelledError(PipelineError):
    """Run was cancelled by the caller."""

    code = "run_cancelled"

    def __init__(self, stage: str | None = None, run_id: str | None = None) -> None:
        self.run_id = run_id
        self.stage = stage
        where = f" during {stage}" if stage else ""
        super().__init__(f"Run cancelled{where}", {"run_id": run_id, "stage": stage})


class BudgetExceededError(PipelineError):
    """Next external call would push the run over its budget."""

    code = "budget_exceeded"

    def __init__(self, budget_limit: float, projected_cost: float) -> None:
        self.budget_limit = budget_limit
        self.projected_cost = projected_cost
        super().__init__(
            f"Budget {budget_limit:.2f} exceeded (projected {projected_cost:.2f})",
            {"budget_limit": budget_limit, "projected_cost": projected_cost},
        )


# External API Errors
class ExternalAPIError(KeywordUniverseError):
    """Error calling external API."""

    def __init__(self, api_name: str, message: str) -> None:
        self.api_name = api_name
        super().__init__(f"{api_name} API error: {message}", {"api_name": api_name})


class RateLimitExceededError(ExternalAPIError):
    """Rate limit exceeded for external API."""

    def __init__(self, api_name: str) -> None:
        super().__init__(api_name, "Rate limit exceeded")


class APIKeyMissingError(ExternalAPIError):
    """API key not configured."""

    def __init__(self, api_name: str) -> None:
        super().__init__(api_name, "API key not configured")
