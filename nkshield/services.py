"""Wiring of the defense components around one KV store."""

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from nkshield.alerting import AlertDispatcher
from nkshield.blocklist import BlocklistStore
from nkshield.config import ServiceConfig
from nkshield.identity import hash_ip
from nkshield.image_proxy import ImageProxy
from nkshield.incidents import IncidentLog
from nkshield.profiles import ProfileStore
from nkshield.rate_limiter import RateLimiterConfig, SlidingWindowRateLimiter
from nkshield.scoring import ThreatScorer
from nkshield.settings import SettingsStore
from nkshield.store import KVStore


@dataclass
class DefenseServices:
    """Every component a request handler may need, sharing one store."""

    config: ServiceConfig
    store: KVStore
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    settings: SettingsStore = field(init=False)
    scorer: ThreatScorer = field(init=False)
    blocklist: BlocklistStore = field(init=False)
    profiles: ProfileStore = field(init=False)
    incidents: IncidentLog = field(init=False)
    alerts: AlertDispatcher = field(init=False)
    rate_limiter: SlidingWindowRateLimiter = field(init=False)
    image_proxy: ImageProxy = field(init=False)

    def __post_init__(self) -> None:
        self.settings = SettingsStore(self.store)
        self.scorer = ThreatScorer(self.store)
        self.blocklist = BlocklistStore(self.store)
        self.profiles = ProfileStore(self.store)
        self.incidents = IncidentLog(self.store)
        self.alerts = AlertDispatcher(self.store, self.config)
        self.image_proxy = ImageProxy(self.store)
        self.rate_limiter = SlidingWindowRateLimiter(
            self.store,
            RateLimiterConfig(
                requests=self.config.rate_limit_requests,
                window_seconds=self.config.rate_limit_window,
                name="api",
            ),
        )

    def hash_ip(self, ip: str) -> str:
        return hash_ip(ip, self.config.rate_limit_salt)

    async def close(self) -> None:
        await self.alerts.close()
        await self.image_proxy.close()
        await self.store.close()
