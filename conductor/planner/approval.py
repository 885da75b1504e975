"""Approval gate for steps with external, irreversible effects."""

from __future__ import annotations

from conductor.core.activity import ActivitySink
from conductor.planner.models import PlanStep
from conductor.utils.logging import get_logger

log = get_logger(__name__)

# Tools that send messages or mutate calendars, issue trackers or chat state.
# Consulted both when planning and right before execution.
SENSITIVE_TOOLS = frozenset({
    "send_email",
    "gmail_send",
    "gmail_send_email",
    "gmail_reply",
    "create_calendar_event",
    "google_calendar_create_event",
    "google_calendar_schedule_meeting",
    "google_calendar_update_event",
    "google_calendar_delete_event",
    "linear_create_issue",
    "linear_update_issue",
    "github_create_issue",
    "github_comment",
    "slack_send_message",
    "telegram_send_message",
    "whatsapp_send_message",
})


def is_sensitive_tool(tool: str) -> bool:
    return tool in SENSITIVE_TOOLS


def needs_approval(step: PlanStep) -> bool:
    return step.requires_approval or is_sensitive_tool(step.tool)


class ApprovalGate:
    """Tells the user a step is waiting for them.

    Holds no state: the orchestrator has already paused the plan by the time
    ``request_approval`` runs.
    """

    def __init__(
        self,
        sink: ActivitySink,
        approval_url_template: str = "/plans/{plan_id}/approve",
    ) -> None:
        self._sink = sink
        self._approval_url_template = approval_url_template

    def approval_url(self, plan_id: str, step_id: str) -> str:
        return self._approval_url_template.format(plan_id=plan_id, step_id=step_id)

    async def request_approval(self, user_id: str, plan_id: str, step: PlanStep) -> bool:
        url = self.approval_url(plan_id, step.id)
        label = step.description or step.tool

        try:
            await self._sink.log_activity(
                user_id,
                "agent_approval_requested",
                f"Approval needed: {label}",
                description=(
                    f"Step {step.id} wants to run '{step.tool}'. "
                    f"Approve or reject at {url}"
                ),
                metadata={
                    "plan_id": plan_id,
                    "step_id": step.id,
                    "tool": step.tool,
                    "args": step.args,
                    "approval_url": url,
                },
            )
        except Exception:
            log.exception("approval_activity_failed", plan_id=plan_id, step_id=step.id)

        try:
            await self._sink.notify(
                user_id,
                [f"Your agent is waiting for approval to run {step.tool}: {label}. {url}"],
                related_id=plan_id,
            )
        except Exception:
            log.warning("approval_notification_failed", plan_id=plan_id, step_id=step.id, exc_info=True)

        log.info("approval_requested", plan_id=plan_id, step_id=step.id, tool=step.tool)
        return True
