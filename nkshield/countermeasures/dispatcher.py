"""Choose exactly one countermeasure per request."""

import logging
from typing import TYPE_CHECKING

from nkshield.countermeasures.base import (
    Action,
    ActionKind,
    Countermeasure,
    Decoration,
    DispatchContext,
)
from nkshield.countermeasures.block import HardBlock
from nkshield.countermeasures.entropy import EntropyInjection
from nkshield.countermeasures.log_poisoning import LogPoisoning
from nkshield.countermeasures.sql_backfire import SqlBackfire
from nkshield.countermeasures.tarpit import Tarpit
from nkshield.countermeasures.zipbomb import ZipBomb

if TYPE_CHECKING:
    from nkshield.services import DefenseServices

logger = logging.getLogger("nkshield.countermeasures.dispatcher")

# Priority order: the first rule that applies wins.
COUNTERMEASURE_REGISTRY: list[type[Countermeasure]] = [
    HardBlock,
    ZipBomb,
    SqlBackfire,
    Tarpit,
]

DECORATION_REGISTRY: list[type[Decoration]] = [
    EntropyInjection,
    LogPoisoning,
]

DECORATED_KINDS = (ActionKind.PASS, ActionKind.TARPIT)


class CountermeasureDispatcher:
    """Evaluates the registered rules in priority order.

    A rule that raises is skipped; when nothing applies the request is
    passed through and only logged.
    """

    def __init__(self, services: "DefenseServices"):
        self.rules = [cls(services) for cls in COUNTERMEASURE_REGISTRY]
        self.decorations = [cls() for cls in DECORATION_REGISTRY]

    async def dispatch(self, ctx: DispatchContext) -> Action:
        """
        Pick the countermeasure for a scored request.

        Args:
            ctx: Dispatch context for the request

        Returns:
            The chosen action, with decoration headers attached when the
            request is allowed through (pass or tarpit)
        """
        action = Action(kind=ActionKind.PASS)
        for rule in self.rules:
            try:
                if not rule.applies(ctx):
                    continue
                action = await rule.action(ctx)
                break
            except Exception as e:
                logger.error(f"Countermeasure {rule.name} failed for {ctx.hashed_ip[:12]}: {e}")
                action = Action(kind=ActionKind.PASS)
                break

        if action.kind in DECORATED_KINDS:
            for decoration in self.decorations:
                try:
                    if decoration.applies(ctx):
                        action.headers.update(decoration.headers(ctx))
                        action.decorations.append(decoration.name)
                except Exception as e:
                    logger.error(f"Decoration {decoration.name} failed: {e}")

        if action.kind is not ActionKind.PASS or action.decorations:
            logger.info(f"Countermeasure {action.label} for {ctx.hashed_ip[:12]}")
        return action
