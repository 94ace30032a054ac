from __future__ import annotations

from dataclasses import dataclass
from typing import Any

FROZEN_REASON_CODES: frozenset[str] = frozenset(
    {
        "toll_not_found",
        "ambiguous_match",
        "missing_price",
        "conflicting_upsert",
        "invalid_price_owner",
        "invalid_toll_pair",
        "invalid_amount",
        "unique_constraint_violation",
        "invalid_geometry",
        "state_calculator_unavailable",
        "store_snapshot_invalid",
        "engine_error",
    }
)


@dataclass
class EngineDataError(ValueError):
    reason_code: str
    message: str
    details: dict[str, Any] | None = None

    def __str__(self) -> str:
        return self.message


@dataclass
class UniqueConstraintError(EngineDataError):
    """Raised by the store when an insert collides with an existing unique key."""


@dataclass(frozen=True)
class FailureDescriptor:
    """One failed item of a batch operation. Batches collect these instead of aborting."""

    key: str
    reason_code: str
    message: str

    def as_dict(self) -> dict[str, str]:
        return {"key": self.key, "reason_code": self.reason_code, "message": self.message}


def normalize_reason_code(reason_code: str, *, default: str = "engine_error") -> str:
    code = str(reason_code or "").strip()
    if code in FROZEN_REASON_CODES:
        return code
    return default


def failure_from_error(key: str, error: EngineDataError) -> FailureDescriptor:
    return FailureDescriptor(
        key=str(key),
        reason_code=normalize_reason_code(error.reason_code),
        message=error.message,
    )
