"""Base class and decision types for countermeasures."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Optional

from aiohttp import web

from nkshield.models import ScoreResult, ThreatLevel, ThreatReason
from nkshield.settings import SecuritySettings

if TYPE_CHECKING:
    from nkshield.services import DefenseServices


class ActionKind(Enum):
    """What the pipeline does with the request after dispatch."""

    PASS = "log_only"
    TARPIT = "tarpit"
    SQL_BACKFIRE = "sql_backfire"
    ZIP_BOMB = "zip_bomb"
    HARD_BLOCK = "hard_block"


@dataclass
class DispatchContext:
    """Everything a countermeasure rule may inspect for one request."""

    hashed_ip: str
    settings: SecuritySettings
    score: ScoreResult
    method: str = "GET"
    path: str = "/"
    user_agent: str = ""
    flagged: bool = False
    honeytoken: bool = False
    sql_probe: bool = False
    prior_blocks: int = 0

    @property
    def level(self) -> ThreatLevel:
        return self.score.level

    @property
    def reasons(self) -> list[ThreatReason]:
        return self.score.reasons

    def has(self, reason: ThreatReason) -> bool:
        return reason in self.score.reasons

    @property
    def looks_like_browser(self) -> bool:
        """No header heuristic fired for this request."""
        header_signals = {
            ThreatReason.SUSPICIOUS_UA,
            ThreatReason.MISSING_BROWSER_HEADERS,
            ThreatReason.GENERIC_ACCEPT,
        }
        return not header_signals.intersection(self.score.reasons)


@dataclass
class Action:
    """A single dispatch decision.

    `response` is set for terminal actions; `delay_ms` for tarpits;
    `headers` collects decorations (noise, poisoned headers) to add to
    whatever response is finally sent.
    """

    kind: ActionKind = ActionKind.PASS
    response: Optional[web.StreamResponse] = None
    delay_ms: int = 0
    headers: dict[str, str] = field(default_factory=dict)
    decorations: list[str] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.response is not None

    @property
    def label(self) -> str:
        """Countermeasure name recorded with incidents."""
        return "+".join([self.kind.value, *self.decorations])


class Countermeasure(ABC):
    """Base class for all countermeasure rules."""

    name: str = "countermeasure"

    def __init__(self, services: "DefenseServices"):
        self.services = services

    @abstractmethod
    def applies(self, ctx: DispatchContext) -> bool:
        """
        Check whether this rule fires for the request.

        Args:
            ctx: Dispatch context for the request

        Returns:
            True if the rule's action should be taken
        """
        ...

    @abstractmethod
    async def action(self, ctx: DispatchContext) -> Action:
        """
        Build (and perform any side effects of) this rule's action.

        Args:
            ctx: Dispatch context for the request

        Returns:
            The action the pipeline applies
        """
        ...


class Decoration(ABC):
    """Rule that adds response headers without choosing the primary action."""

    name: str = "decoration"

    @abstractmethod
    def applies(self, ctx: DispatchContext) -> bool:
        ...

    @abstractmethod
    def headers(self, ctx: DispatchContext) -> dict[str, str]:
        ...
