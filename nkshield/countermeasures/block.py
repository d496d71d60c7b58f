"""Hard block: blocklist the identity once its score reaches BLOCK."""

import logging

from aiohttp import web

from nkshield.countermeasures.base import Action, ActionKind, Countermeasure, DispatchContext
from nkshield.honeytokens import defense_headers, random_taunt
from nkshield.models import ThreatLevel

logger = logging.getLogger("nkshield.countermeasures.block")


def forbidden_response() -> web.Response:
    """403 returned to blocked identities."""
    return web.json_response({"error": "Forbidden"}, status=403)


class HardBlock(Countermeasure):
    """Adds an auto-block entry and denies the request."""

    name = "hard_block"

    def applies(self, ctx: DispatchContext) -> bool:
        return ctx.level is ThreatLevel.BLOCK and ctx.settings.hard_block_enabled

    async def action(self, ctx: DispatchContext) -> Action:
        reason = ",".join(r.value for r in ctx.reasons) or "threat_score"
        await self.services.blocklist.block_ip(
            ctx.hashed_ip,
            reason=reason,
            auto_blocked=True,
            score=ctx.score.score,
        )
        response = web.json_response(
            {"error": "Forbidden", "message": random_taunt()},
            status=403,
            headers=defense_headers(),
        )
        return Action(kind=ActionKind.HARD_BLOCK, response=response)
