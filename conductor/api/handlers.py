"""Request validation and response shaping for the plan API."""

from __future__ import annotations

import hmac
from typing import Any

from conductor.planner.models import Plan, PlanStatus
from conductor.planner.reporter import generate_plan_summary

_APPROVE_WORDS = frozenset({"approve", "approved", "yes", "y"})
_REJECT_WORDS = frozenset({"reject", "rejected", "deny", "no", "n"})

VALID_URGENCIES = ("low", "normal", "high")


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

def validate_bearer(header: str, configured: str) -> bool:
    """Check an ``Authorization: Bearer`` header against the configured secret.

    Returns False if no secret is configured (rejects unauthenticated requests).
    """
    if not configured:
        return False
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return False
    return hmac.compare_digest(token.strip(), configured)


# ---------------------------------------------------------------------------
# Payload parsing
# ---------------------------------------------------------------------------

def parse_approval_action(raw: Any) -> str | None:
    """Normalize a free-form approval reply to ``approve``, ``reject`` or None."""
    if not isinstance(raw, str):
        return None
    word = raw.strip().lower()
    if word in _APPROVE_WORDS:
        return "approve"
    if word in _REJECT_WORDS:
        return "reject"
    return None


def parse_steps_hint(raw: Any) -> list[str]:
    """Accept a list of hints or a comma-separated string."""
    if raw is None:
        return []
    items = raw if isinstance(raw, list) else str(raw).split(",")
    return [str(item).strip() for item in items if str(item).strip()]


def parse_statuses(raw: str | None) -> list[PlanStatus]:
    """Comma-separated status filter. Raises ValueError on unknown values."""
    if not raw:
        return []
    return [PlanStatus(part.strip()) for part in raw.split(",") if part.strip()]


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

def plan_to_json(plan: Plan, include_summary: bool = False) -> dict[str, Any]:
    data = plan.to_dict()
    if include_summary:
        data["summary"] = generate_plan_summary(plan)
    return data

