"""Entropy injection: random noise headers for flagged attackers."""

from nkshield.countermeasures.base import Decoration, DispatchContext
from nkshield.honeytokens import DEFAULT_ENTROPY_HEADERS, defense_headers, entropy_headers


class EntropyInjection(Decoration):
    name = "entropy"

    def __init__(self, count: int = DEFAULT_ENTROPY_HEADERS):
        self.count = count

    def applies(self, ctx: DispatchContext) -> bool:
        return ctx.flagged and ctx.settings.entropy_injection_enabled

    def headers(self, ctx: DispatchContext) -> dict[str, str]:
        return {**entropy_headers(self.count), **defense_headers()}
