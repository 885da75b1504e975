"""Plan HTTP API using aiohttp."""

from __future__ import annotations

from typing import Any, Awaitable, Callable

from aiohttp import web

from conductor.api.handlers import (
    VALID_URGENCIES,
    parse_approval_action,
    parse_statuses,
    parse_steps_hint,
    plan_to_json,
    validate_bearer,
)
from conductor.config import ServerConfig
from conductor.core.bus import EventBus, PlanContinue
from conductor.planner.errors import (
    PlanningError,
    PlanNotFoundError,
    PlanStateError,
    StaleWriteError,
)
from conductor.planner.orchestrator import Orchestrator
from conductor.planner.store import PlanStore
from conductor.tools.base import ExecutionContext
from conductor.utils.logging import get_logger

log = get_logger(__name__)

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def _error(status: int, message: str) -> web.Response:
    return web.json_response({"error": message}, status=status)


class PlanServer:
    """Creates, inspects, continues and approves plans over HTTP."""

    def __init__(
        self,
        config: ServerConfig,
        bus: EventBus,
        orchestrator: Orchestrator,
        store: PlanStore,
    ) -> None:
        self._config = config
        self._bus = bus
        self._orchestrator = orchestrator
        self._store = store
        self._runner: web.AppRunner | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if not self._config.secret:
            log.warning(
                "plan_server_no_secret",
                msg="No server secret configured; all requests will be rejected.",
            )
        app = self._build_app()
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._config.bind, self._config.port)
        await site.start()
        log.info("plan_server_started", bind=self._config.bind, port=self._config.port)

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        log.info("plan_server_stopped")

    # ------------------------------------------------------------------
    # App construction
    # ------------------------------------------------------------------

    def _build_app(self) -> web.Application:
        app = web.Application(middlewares=[self._auth_middleware, self._error_middleware])
        app.router.add_post("/plans", self._handle_create)
        app.router.add_get("/plans", self._handle_list)
        app.router.add_get("/plans/{plan_id}", self._handle_get)
        app.router.add_post("/plans/{plan_id}/continue", self._handle_continue)
        app.router.add_post("/plans/{plan_id}/approve", self._handle_approve)
        return app

    @web.middleware
    async def _auth_middleware(self, request: web.Request, handler: Handler) -> web.StreamResponse:
        if not validate_bearer(request.headers.get("Authorization", ""), self._config.secret):
            return _error(401, "Invalid credentials")
        return await handler(request)

    @web.middleware
    async def _error_middleware(self, request: web.Request, handler: Handler) -> web.StreamResponse:
        try:
            return await handler(request)
        except PlanNotFoundError as e:
            return _error(404, str(e))
        except (PlanStateError, StaleWriteError) as e:
            return _error(409, str(e))
        except PlanningError as e:
            return _error(400, str(e))

    # ------------------------------------------------------------------
    # Request handling
    # ------------------------------------------------------------------

    async def _handle_create(self, request: web.Request) -> web.Response:
        payload = await self._json_body(request)
        if payload is None:
            return _error(400, "Invalid JSON")

        user_id = payload.get("user_id")
        goal = payload.get("goal")
        if not isinstance(user_id, str) or not user_id:
            return _error(400, "user_id is required")
        if not isinstance(goal, str) or not goal.strip():
            return _error(400, "goal is required")
        urgency = payload.get("urgency") or "normal"
        if urgency not in VALID_URGENCIES:
            return _error(400, f"urgency must be one of {', '.join(VALID_URGENCIES)}")

        context = ExecutionContext(
            user_id=user_id,
            organization_id=payload.get("organization_id") or "",
            conversation_id=payload.get("conversation_id"),
        )
        plan = await self._orchestrator.create_and_start_plan(
            goal.strip(),
            context,
            hints=parse_steps_hint(payload.get("steps_hint")),
            urgency=urgency,
        )
        log.info("plan_api_created", plan_id=plan.id, user_id=user_id)
        return web.json_response(plan_to_json(plan), status=201)

    async def _handle_list(self, request: web.Request) -> web.Response:
        user_id = request.query.get("user_id", "")
        if not user_id:
            return _error(400, "user_id is required")
        try:
            statuses = parse_statuses(request.query.get("status"))
            limit = int(request.query.get("limit", "20"))
        except ValueError as e:
            return _error(400, str(e))
        plans = await self._store.list_by_user(user_id, statuses=statuses, limit=limit)
        return web.json_response({"plans": [plan_to_json(p) for p in plans]})

    async def _handle_get(self, request: web.Request) -> web.Response:
        plan_id = request.match_info["plan_id"]
        plan = await self._store.get_by_id(plan_id)
        if plan is None:
            raise PlanNotFoundError(plan_id)
        return web.json_response(plan_to_json(plan, include_summary=True))

    async def _handle_continue(self, request: web.Request) -> web.Response:
        plan_id = request.match_info["plan_id"]
        delivered = await self._bus.publish(PlanContinue(plan_id=plan_id))
        if not delivered:
            return _error(503, "Continuation queue full")
        return web.json_response({"plan_id": plan_id, "accepted": True}, status=202)

    async def _handle_approve(self, request: web.Request) -> web.Response:
        plan_id = request.match_info["plan_id"]
        payload = await self._json_body(request)
        if payload is None:
            return _error(400, "Invalid JSON")
        action = parse_approval_action(payload.get("action"))
        if action is None:
            return _error(400, "action must be approve or reject")

        if action == "approve":
            plan = await self._orchestrator.resume_plan_after_approval(plan_id)
        else:
            plan = await self._orchestrator.reject_plan_step(plan_id)
        log.info("plan_api_decision", plan_id=plan_id, action=action)
        return web.json_response(plan_to_json(plan))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _json_body(request: web.Request) -> dict[str, Any] | None:
        try:
            payload = await request.json()
        except ValueError:
            return None
        return payload if isinstance(payload, dict) else None
