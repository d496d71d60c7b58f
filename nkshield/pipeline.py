"""Request defense pipeline, installed as an aiohttp middleware.

Stages run in a fixed order and each returns either None (continue) or a
terminal response:

    blocklist gate -> admin session -> rate limiter -> deception routes
    -> header heuristics -> scoring -> countermeasure dispatch
    -> incident log / profile / alert

The outer middleware applies exactly one terminal action per request.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from aiohttp import web

from nkshield.auth import is_admin_request
from nkshield.canary import find_canary_document, serve_canary_document
from nkshield.countermeasures import Action, ActionKind, CountermeasureDispatcher, DispatchContext
from nkshield.countermeasures.block import forbidden_response
from nkshield.countermeasures.sql_backfire import collect_probe_values, detect_sql_injection
from nkshield.errors import NkShieldError, StoreUnavailableError
from nkshield.honeytokens import is_honeytoken, is_marked_attacker, mark_attacker, trigger_honeytoken_alarm
from nkshield.identity import get_client_ip
from nkshield.models import Incident, ScoreResult, ThreatLevel, ThreatReason
from nkshield.rate_limiter import apply_rate_limit, service_unavailable
from nkshield.scoring import Thresholds, detect_signals, reason_points_from_settings
from nkshield.services import DefenseServices
from nkshield.settings import SecuritySettings
from nkshield.traps import denied_response, is_robots_trap

logger = logging.getLogger("nkshield.pipeline")

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]

RATE_LIMITED_PREFIX = "/api/"
RATE_LIMIT_EXEMPT = frozenset({"/api/pixel.png", "/api/canary-callback"})
RATE_LIMIT_STRIKE_PREFIX = "nk-rl-strike:"
RATE_LIMIT_STRIKE_TTL = 3600
MAX_PROBE_BODY = 65536
ALERTED_ACTIONS = (ActionKind.HARD_BLOCK, ActionKind.ZIP_BOMB, ActionKind.SQL_BACKFIRE)


@dataclass
class RequestState:
    """Per-request facts shared between stages."""

    hashed_ip: str
    settings: SecuritySettings
    is_admin: bool = False
    honeytoken_key: Optional[str] = None
    robots_violation: bool = False
    sql_probe: bool = False
    reasons: list[ThreatReason] = field(default_factory=list)


def honeytoken_key_for(request: web.Request) -> Optional[str]:
    """Honeytoken named by the request path, or by `?key=` on the KV API."""
    candidate = request.path.strip("/")
    if is_honeytoken(candidate):
        return candidate
    if request.path == "/api/kv":
        key = request.query.get("key", "")
        if is_honeytoken(key):
            return key
    return None


class DefensePipeline:
    """Runs the defense stages for every request."""

    def __init__(self, services: DefenseServices):
        self.services = services
        self.dispatcher = CountermeasureDispatcher(services)

    # ------------------------------------------------------------------
    # Gate stages
    # ------------------------------------------------------------------

    async def blocklist_gate(self, request: web.Request, state: RequestState) -> Optional[web.Response]:
        try:
            blocked = await self.services.blocklist.is_blocked(state.hashed_ip)
        except StoreUnavailableError as e:
            logger.error(f"Blocklist check failed, denying request: {e}")
            return service_unavailable("Security service is temporarily unavailable. Please try again later.")
        if blocked:
            logger.debug(f"Blocked identity {state.hashed_ip[:12]} rejected")
            return forbidden_response()
        return None

    async def admin_session(self, request: web.Request, state: RequestState) -> Optional[web.Response]:
        state.is_admin = await is_admin_request(self.services, request, state.hashed_ip, state.settings)
        request["is_admin"] = state.is_admin
        return None

    async def rate_limit(self, request: web.Request, state: RequestState) -> Optional[web.Response]:
        if state.is_admin or not state.settings.rate_limit_enabled:
            return None
        if not request.path.startswith(RATE_LIMITED_PREFIX) or request.path in RATE_LIMIT_EXEMPT:
            return None
        response = await apply_rate_limit(self.services.rate_limiter, state.hashed_ip)
        if response is not None and response.status == 429:
            await self._record_strike(state.hashed_ip)
        return response

    async def _record_strike(self, hashed_ip: str) -> None:
        # The 429 itself is not scored; the next admitted request carries the signal
        try:
            await self.services.store.set(
                f"{RATE_LIMIT_STRIKE_PREFIX}{hashed_ip}", True, ex=RATE_LIMIT_STRIKE_TTL
            )
        except NkShieldError as e:
            logger.warning(f"Could not record rate limit strike: {e}")

    async def _consume_strike(self, hashed_ip: str) -> bool:
        key = f"{RATE_LIMIT_STRIKE_PREFIX}{hashed_ip}"
        try:
            if not await self.services.store.get(key):
                return False
            await self.services.store.delete(key)
        except NkShieldError:
            return False
        return True

    # ------------------------------------------------------------------
    # Detection stages
    # ------------------------------------------------------------------

    def detect_traps(self, request: web.Request, state: RequestState) -> None:
        settings = state.settings
        if settings.honeytokens_enabled:
            state.honeytoken_key = honeytoken_key_for(request)
        if state.honeytoken_key is None and settings.robots_trap_enabled:
            state.robots_violation = is_robots_trap(request.path)

    async def detect_sql_probe(self, request: web.Request) -> bool:
        body = None
        if (
            request.method in ("POST", "PUT", "PATCH")
            and request.content_type == "application/json"
            and request.can_read_body
            and (request.content_length or 0) <= MAX_PROBE_BODY
        ):
            try:
                body = json.loads(await request.text())
            except ValueError:
                body = None
        values = collect_probe_values(
            request.path_qs, dict(request.query), body, request.headers.get("Cookie")
        )
        return detect_sql_injection(values)

    async def collect_reasons(self, request: web.Request, state: RequestState) -> list[ThreatReason]:
        """Signals for this request, strongest first."""
        reasons: list[ThreatReason] = []
        if state.honeytoken_key is not None:
            reasons.append(ThreatReason.HONEYTOKEN_ACCESS)
        if state.robots_violation:
            reasons.append(ThreatReason.ROBOTS_VIOLATION)
        if state.settings.sql_backfire_enabled:
            state.sql_probe = await self.detect_sql_probe(request)
            if state.sql_probe:
                reasons.append(ThreatReason.SQL_INJECTION_PROBE)
        if await self._consume_strike(state.hashed_ip):
            reasons.append(ThreatReason.RATE_LIMIT_EXCEEDED)
        for signal in detect_signals(request.headers):
            if signal is ThreatReason.SUSPICIOUS_UA and not state.settings.suspicious_ua_blocking_enabled:
                continue
            reasons.append(signal)
        state.reasons = reasons
        return reasons

    async def score(self, state: RequestState) -> ScoreResult:
        settings = state.settings
        if not settings.threat_scoring_enabled:
            return ScoreResult(score=0, level=ThreatLevel.CLEAN, reasons=list(state.reasons))
        return await self.services.scorer.increment(
            state.hashed_ip,
            state.reasons,
            reason_points_from_settings(settings),
            Thresholds.from_settings(settings),
        )

    async def dispatch(self, request: web.Request, state: RequestState, result: ScoreResult) -> Action:
        settings = state.settings
        prior_blocks = 0
        if settings.zip_bomb_enabled and settings.zip_bomb_on_repeat_offender:
            prior_blocks = await self.services.blocklist.block_count(state.hashed_ip)
        ctx = DispatchContext(
            hashed_ip=state.hashed_ip,
            settings=settings,
            score=result,
            method=request.method,
            path=request.path[:200],
            user_agent=request.headers.get("User-Agent", "")[:200],
            flagged=await is_marked_attacker(self.services.store, state.hashed_ip),
            honeytoken=state.honeytoken_key is not None,
            sql_probe=state.sql_probe,
            prior_blocks=prior_blocks,
        )
        return await self.dispatcher.dispatch(ctx)

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    async def record(
        self, request: web.Request, state: RequestState, result: ScoreResult, action: Action
    ) -> None:
        """Write consequential requests to the incident log, profile and alert channels."""
        services = self.services
        settings = state.settings
        user_agent = request.headers.get("User-Agent", "")[:200]
        path = request.path[:200]

        if state.honeytoken_key is not None:
            incident = await trigger_honeytoken_alarm(
                services.store,
                services.incidents,
                state.hashed_ip,
                state.honeytoken_key,
                request.method,
                user_agent,
                profiles=services.profiles,
                threat_score=result.score,
                threat_level=result.level.value,
                countermeasure=action.label,
                max_entries=settings.max_alerts_stored,
            )
            await services.alerts.send(incident, settings, severity="critical")
            return

        if state.robots_violation:
            await mark_attacker(services.store, state.hashed_ip)

        consequential = (
            state.robots_violation
            or action.kind is not ActionKind.PASS
            or (result.reasons and result.level is not ThreatLevel.CLEAN)
        )
        if not consequential:
            return

        if action.kind is ActionKind.HARD_BLOCK:
            key, tag = f"block:{path}", "THREAT ESCALATION"
        elif state.robots_violation:
            key, tag = f"robots:{path}", "ACCESS VIOLATION"
        else:
            key, tag = f"threat:{path}", "THREAT ESCALATION"

        incident = Incident(
            type=result.reasons[0].value if result.reasons else "security_event",
            key=key,
            method=request.method,
            user_agent=user_agent,
            threat_score=result.score,
            threat_level=result.level.value,
            countermeasure=action.label,
            hashed_ip=state.hashed_ip,
            request_details={"path": path, "reasons": [r.value for r in result.reasons]},
        )
        await services.incidents.append(incident, tag=tag, max_entries=settings.max_alerts_stored)
        await services.profiles.record_incident(state.hashed_ip, incident)
        if action.kind in ALERTED_ACTIONS:
            severity = "critical" if action.kind is ActionKind.HARD_BLOCK else "high"
            await services.alerts.send(incident, settings, severity=severity)

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    async def trap_response(self, request: web.Request, state: RequestState) -> Optional[web.Response]:
        """Response for a deception route, or None for ordinary routes."""
        if state.honeytoken_key is not None:
            return web.json_response({"error": "Not found"}, status=404)
        if find_canary_document(request.path) is not None:
            response = await serve_canary_document(self.services, request, state.hashed_ip)
            if response is not None:
                return response
        if state.robots_violation:
            return denied_response(request.path)
        return None

    async def handle(self, request: web.Request, handler: Handler) -> web.StreamResponse:
        services = self.services
        hashed_ip = services.hash_ip(get_client_ip(request, services.config.trusted_proxy_hops))
        request["hashed_ip"] = hashed_ip
        state = RequestState(hashed_ip=hashed_ip, settings=await services.settings.load())
        request["settings"] = state.settings

        for stage in (self.blocklist_gate, self.admin_session, self.rate_limit):
            response = await stage(request, state)
            if response is not None:
                return response

        self.detect_traps(request, state)
        await self.collect_reasons(request, state)

        result = await self.score(state)
        if state.is_admin:
            # Admin traffic is scored for the record but never countered
            if result.reasons:
                signals = ", ".join(r.value for r in result.reasons)
                logger.info(
                    f"Admin request {request.path} scored {result.score} ({result.level.value}): {signals}"
                )
            return await handler(request)

        action = await self.dispatch(request, state, result)
        await self.record(request, state, result, action)
        return await self.apply(request, handler, state, action)

    async def apply(
        self, request: web.Request, handler: Handler, state: RequestState, action: Action
    ) -> web.StreamResponse:
        """Apply the single terminal action chosen for the request."""
        if action.is_terminal:
            return action.response
        if action.delay_ms > 0:
            await self.services.sleep(action.delay_ms / 1000)

        try:
            response = await self.trap_response(request, state)
            if response is None:
                response = await handler(request)
        except web.HTTPException as exc:
            exc.headers.update(action.headers)
            raise
        response.headers.update(action.headers)
        return response


def defense_middleware(pipeline: DefensePipeline):
    """Wrap a pipeline as an aiohttp middleware."""

    @web.middleware
    async def middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
        return await pipeline.handle(request, handler)

    return middleware
