"""Hard blocklist of hashed identities with native TTL expiry."""

import logging

from nkshield.errors import NkShieldError
from nkshield.logging_setup import log_event
from nkshield.models import BlocklistEntry, utc_now_iso
from nkshield.store import KVStore

logger = logging.getLogger("nkshield.blocklist")

BLOCK_PREFIX = "nk-blocked:"
BLOCK_INDEX_KEY = "nk-blocked-index"
BLOCK_TTL = 604800  # 7 days
MIN_BLOCK_TTL = 60
MAX_BLOCK_TTL = 2592000  # 30 days
BLOCK_COUNT_PREFIX = "nk-block-count:"
BLOCK_COUNT_TTL = 2592000


class BlocklistStore:
    """Admin and auto-block entries keyed by hashed IP.

    Presence of `nk-blocked:<hash>` is authoritative; the index set only
    exists so the admin UI can enumerate entries and is pruned lazily.
    """

    def __init__(self, store: KVStore):
        self.store = store

    async def block_ip(
        self,
        hashed_ip: str,
        reason: str = "manual",
        ttl_seconds: int = BLOCK_TTL,
        auto_blocked: bool = False,
        score: int | None = None,
    ) -> BlocklistEntry:
        """
        Add a hard block for an identity.

        Args:
            hashed_ip: Hashed client identity
            reason: Why the identity was blocked
            ttl_seconds: Block lifetime in seconds
            auto_blocked: True when set by the dispatcher rather than an admin
            score: Threat score at the time of an automatic block

        Returns:
            The stored BlocklistEntry
        """
        entry = BlocklistEntry(
            hashed_ip=hashed_ip,
            reason=reason,
            blocked_at=utc_now_iso(),
            auto_blocked=auto_blocked,
            ttl_seconds=ttl_seconds,
            score=score,
        )
        await self.store.set(f"{BLOCK_PREFIX}{hashed_ip}", entry.to_dict(), ex=ttl_seconds)
        await self.store.sadd(BLOCK_INDEX_KEY, hashed_ip)
        count_key = f"{BLOCK_COUNT_PREFIX}{hashed_ip}"
        await self.store.incrby(count_key, 1)
        await self.store.expire(count_key, BLOCK_COUNT_TTL)
        log_event(logger, "AUTO BLOCK" if auto_blocked else "HARD BLOCK SET", entry.to_dict())
        return entry

    async def unblock_ip(self, hashed_ip: str) -> None:
        """Remove a block; future requests from the identity are processed normally."""
        await self.store.delete(f"{BLOCK_PREFIX}{hashed_ip}")
        await self.store.srem(BLOCK_INDEX_KEY, hashed_ip)
        log_event(logger, "HARD BLOCK REMOVED", {"hashedIp": hashed_ip})

    async def is_blocked(self, hashed_ip: str) -> bool:
        """
        Check whether an identity is blocked.

        Raises:
            StoreUnavailableError: If the store cannot be read (callers deny)
        """
        return bool(await self.store.get(f"{BLOCK_PREFIX}{hashed_ip}"))

    async def block_count(self, hashed_ip: str) -> int:
        """How many times the identity has been blocked in the last 30 days."""
        try:
            return int(await self.store.get(f"{BLOCK_COUNT_PREFIX}{hashed_ip}") or 0)
        except (NkShieldError, TypeError, ValueError):
            return 0

    async def get_entry(self, hashed_ip: str) -> BlocklistEntry | None:
        raw = await self.store.get(f"{BLOCK_PREFIX}{hashed_ip}")
        if not isinstance(raw, dict):
            return None
        return BlocklistEntry.from_dict(raw)

    async def get_all_blocked(self) -> list[BlocklistEntry]:
        """List live entries, dropping index members whose block has expired."""
        entries: list[BlocklistEntry] = []
        try:
            hashes = await self.store.smembers(BLOCK_INDEX_KEY)
            for hashed_ip in sorted(hashes):
                entry = await self.get_entry(hashed_ip)
                if entry is None:
                    await self.store.srem(BLOCK_INDEX_KEY, hashed_ip)
                    continue
                entries.append(entry)
        except NkShieldError as e:
            logger.warning(f"Could not read blocklist: {e}")
            return []
        entries.sort(key=lambda e: e.blocked_at, reverse=True)
        return entries
