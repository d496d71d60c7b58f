"""Zip bomb: a tiny gzip body that inflates to 10 MiB of zeros."""

import asyncio
import gzip
import logging
from functools import lru_cache

from aiohttp import web

from nkshield.countermeasures.base import Action, ActionKind, Countermeasure, DispatchContext
from nkshield.models import ThreatLevel, ThreatReason

logger = logging.getLogger("nkshield.countermeasures.zipbomb")

ZIP_BOMB_SIZE = 10 * 1024 * 1024
REPEAT_OFFENDER_BLOCKS = 3


@lru_cache(maxsize=1)
def zip_bomb_payload() -> bytes:
    """Compressed payload, built once per process."""
    payload = gzip.compress(bytes(ZIP_BOMB_SIZE), compresslevel=9)
    logger.debug(f"Built zip bomb payload: {len(payload)} bytes -> {ZIP_BOMB_SIZE} bytes")
    return payload


def zip_bomb_response(payload: bytes) -> web.Response:
    return web.Response(
        body=payload,
        status=200,
        headers={
            "Content-Type": "application/zip",
            "Content-Encoding": "gzip",
            "Content-Disposition": 'attachment; filename="data.zip"',
            "Cache-Control": "no-store",
        },
    )


class ZipBomb(Countermeasure):
    """Serves the zip bomb to confirmed automated attackers."""

    name = "zip_bomb"

    def applies(self, ctx: DispatchContext) -> bool:
        s = ctx.settings
        if not s.zip_bomb_enabled or ctx.looks_like_browser:
            return False
        return (
            (s.zip_bomb_on_block and ctx.level is ThreatLevel.BLOCK)
            or (s.zip_bomb_on_honeytoken and ctx.honeytoken)
            or (s.zip_bomb_on_repeat_offender and ctx.prior_blocks >= REPEAT_OFFENDER_BLOCKS)
            or (s.zip_bomb_on_robots_violation and ctx.has(ThreatReason.ROBOTS_VIOLATION))
            or (s.zip_bomb_on_suspicious_ua and ctx.has(ThreatReason.SUSPICIOUS_UA))
            or (s.zip_bomb_on_rate_limit and ctx.has(ThreatReason.RATE_LIMIT_EXCEEDED))
        )

    async def action(self, ctx: DispatchContext) -> Action:
        payload = await asyncio.to_thread(zip_bomb_payload)
        logger.warning(f"Serving zip bomb to {ctx.hashed_ip[:12]}")
        return Action(kind=ActionKind.ZIP_BOMB, response=zip_bomb_response(payload))
