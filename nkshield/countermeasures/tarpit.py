"""Tarpit: delay the response to waste an attacker's time."""

import random

from nkshield.countermeasures.base import Action, ActionKind, Countermeasure, DispatchContext
from nkshield.models import ThreatLevel, ThreatReason


def tarpit_delay_ms(min_ms: int, max_ms: int, hard_cap_ms: int) -> int:
    """Uniform random delay in [min_ms, max_ms], never above hard_cap_ms."""
    low, high = sorted((max(min_ms, 0), max(max_ms, 0)))
    return min(random.randint(low, high), hard_cap_ms)


class Tarpit(Countermeasure):
    """Delays the response, then lets the request complete."""

    name = "tarpit"

    def applies(self, ctx: DispatchContext) -> bool:
        s = ctx.settings
        return (
            (s.tarpit_on_warn and ctx.level in (ThreatLevel.WARN, ThreatLevel.TARPIT))
            or (s.tarpit_on_suspicious_ua and ctx.has(ThreatReason.SUSPICIOUS_UA))
            or (s.tarpit_on_robots_violation and ctx.has(ThreatReason.ROBOTS_VIOLATION))
            or (s.tarpit_on_honeytoken and ctx.honeytoken)
            or (s.tarpit_on_block and ctx.level is ThreatLevel.BLOCK)
        )

    async def action(self, ctx: DispatchContext) -> Action:
        delay = tarpit_delay_ms(
            ctx.settings.tarpit_min_ms,
            ctx.settings.tarpit_max_ms,
            self.services.config.tarpit_hard_cap_ms,
        )
        return Action(kind=ActionKind.TARPIT, delay_ms=delay)
