"""
Identity Resolution Cache

Resolves chain addresses to display names and avatars through an HTTP lookup
service. Resolutions are memoized per lower-cased address, concurrent lookups
for the same address share one request, and at most ``batch_size`` requests
are in flight per cache, however many callers resolve at once. Failed
lookups are cached as empty identities so a permanently unresolvable address
is not retried in a hot loop.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import aiohttp

from .types import Identity, IdentityLookupError, DatabaseError, ZERO_ADDRESS
from .metrics_server import MetricsServer

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 10


class EnsIdeasClient:
    """HTTP client for an ENS resolve endpoint (``GET {base_url}/{address}``)"""

    def __init__(self, base_url: str, timeout_seconds: float = 10.0,
                 session: Optional[aiohttp.ClientSession] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def lookup(self, address: str) -> Identity:
        """
        Look up one address.

        Raises:
            IdentityLookupError: non-2xx response, invalid body or transport error
        """
        session = await self._get_session()
        url = f"{self.base_url}/{address}"
        try:
            async with session.get(url) as response:
                if response.status < 200 or response.status >= 300:
                    raise IdentityLookupError(f"Identity service returned {response.status} for {address}")
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise IdentityLookupError(f"Identity lookup failed for {address}: {e}") from e

        if not isinstance(data, dict):
            raise IdentityLookupError(f"Unexpected identity payload for {address}")
        return Identity(name=data.get('name') or None, avatar=data.get('avatar') or None)

    async def close(self):
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()


class IdentityCache:
    """
    Memoizing identity resolver.

    Args:
        client: Object with ``async lookup(address) -> Identity`` raising
            IdentityLookupError on failure
        ttl_seconds: Entry lifetime, None keeps entries for the process lifetime
        max_entries: Capacity; least recently used entries are evicted first
        batch_size: Lookups in flight at once across all callers (at most 10)
        redis_manager: Optional shared second tier for successful resolutions
        store: Optional EntityStore; successful resolutions are upserted into ens_names
        clock: Monotonic time source
    """

    def __init__(
        self,
        client,
        ttl_seconds: Optional[int] = None,
        max_entries: int = 50000,
        batch_size: int = MAX_BATCH_SIZE,
        redis_manager=None,
        store=None,
        clock: Callable[[], float] = time.monotonic
    ):
        if batch_size < 1 or batch_size > MAX_BATCH_SIZE:
            raise ValueError(f"batch_size must be within 1..{MAX_BATCH_SIZE}")
        self.client = client
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.batch_size = batch_size
        self.redis = redis_manager
        self.store = store
        self._clock = clock

        self._entries: "OrderedDict[str, Tuple[Identity, Optional[float]]]" = OrderedDict()
        self._inflight: Dict[str, asyncio.Future] = {}
        self._lookup_slots = asyncio.Semaphore(batch_size)

        self.hits = 0
        self.misses = 0
        self.failures = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, address: str) -> bool:
        return self._get_cached(address.lower()) is not None

    # ------------------------------------------------------------------
    # Entry management
    # ------------------------------------------------------------------

    def _get_cached(self, key: str) -> Optional[Identity]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        identity, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return identity

    def _put(self, key: str, identity: Identity):
        expires_at = None
        if self.ttl_seconds is not None:
            expires_at = self._clock() + self.ttl_seconds
        self._entries[key] = (identity, expires_at)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"Evicted identity cache entry {evicted}")
        MetricsServer.update_identity_cache_size(len(self._entries))

    def invalidate(self, address: str):
        """Drop an entry so the next resolve refreshes it"""
        self._entries.pop(address.lower(), None)

    def clear(self):
        self._entries.clear()

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def resolve(self, address: Optional[str]) -> Identity:
        """Resolve one address; never raises"""
        if not address:
            return Identity()
        key = address.lower()
        if key == ZERO_ADDRESS:
            MetricsServer.record_identity_lookup("skipped")
            return Identity()

        cached = self._get_cached(key)
        if cached is not None:
            self.hits += 1
            MetricsServer.record_identity_lookup("hit")
            return cached

        pending = self._inflight.get(key)
        if pending is not None:
            return await asyncio.shield(pending)

        future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            try:
                identity = await self._fetch(key)
            except Exception as e:
                logger.warning(f"Unexpected identity resolution error for {key}: {e}")
                identity = Identity()
            future.set_result(identity)
            return identity
        finally:
            if not future.done():
                # Owner cancelled; waiters get an uncached empty identity
                future.set_result(Identity())
            self._inflight.pop(key, None)

    async def _fetch(self, key: str) -> Identity:
        if self.redis is not None:
            shared = await asyncio.to_thread(self.redis.get_json, f"identity:{key}")
            if shared is not None:
                identity = Identity(**shared)
                self._put(key, identity)
                self.hits += 1
                MetricsServer.record_identity_lookup("hit")
                return identity

        self.misses += 1
        try:
            async with self._lookup_slots:
                identity = await self.client.lookup(key)
        except IdentityLookupError as e:
            self.failures += 1
            MetricsServer.record_identity_lookup("failure")
            logger.debug(f"Caching empty identity for {key}: {e}")
            identity = Identity()
            self._put(key, identity)
            return identity

        MetricsServer.record_identity_lookup("miss")
        self._put(key, identity)
        if self.redis is not None:
            await asyncio.to_thread(self.redis.set_json, f"identity:{key}", identity.dict())
        await self._persist(key, identity)
        return identity

    async def _persist(self, key: str, identity: Identity):
        if self.store is None:
            return
        # Imported here to keep the cache usable without the database layer
        from .database import IdentityModel
        try:
            await self.store.insert_or_merge(
                IdentityModel,
                {
                    'address': key,
                    'name': identity.name,
                    'avatar': identity.avatar,
                    'resolved_at': int(time.time()),
                },
                merge_fields=['name', 'avatar', 'resolved_at']
            )
        except DatabaseError as e:
            logger.warning(f"Failed to persist identity for {key}: {e}")

    async def resolve_batch(self, addresses: Iterable[Optional[str]]) -> Dict[str, Identity]:
        """
        Resolve many addresses, at most ``batch_size`` lookups in flight.

        Returns a mapping keyed by lower-cased address covering every input.
        """
        results: Dict[str, Identity] = {}
        unique: List[str] = []
        seen = set()
        for address in addresses:
            if not address:
                continue
            key = address.lower()
            if key in seen:
                continue
            seen.add(key)
            if key == ZERO_ADDRESS:
                results[key] = Identity()
                continue
            unique.append(key)

        for start in range(0, len(unique), self.batch_size):
            chunk = unique[start:start + self.batch_size]
            resolved = await asyncio.gather(*(self.resolve(key) for key in chunk))
            results.update(zip(chunk, resolved))

        return results

    def stats(self) -> Dict[str, int]:
        return {
            'entries': len(self._entries),
            'hits': self.hits,
            'misses': self.misses,
            'failures': self.failures,
        }
