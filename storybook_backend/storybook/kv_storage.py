"""
Session storage for in-progress stories.

Records are JSON objects keyed by session id and expire after a TTL that is
refreshed on every write. Each record carries a top-level ``version`` owned by
the store, so a read-modify-write turn can be committed with
``compare_and_put`` and lose cleanly instead of overwriting a concurrent turn.

Two backends:
- ``KVSessionStore``: Vercel KV / Upstash Redis over its REST API.
- ``MemorySessionStore``: a locked dict, for local development and tests.
"""
import json
import time
import httpx
import logging
import threading
from typing import Any, Callable, Dict, Optional, Tuple

from . import settings

logger = logging.getLogger(__name__)


class StorageError(RuntimeError):
    """The backing store could not be reached or answered with an error."""


class VersionConflict(RuntimeError):
    """The record changed (or expired) between read and compare_and_put."""


class SessionStore:
    name = "abstract"

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def put(self, key: str, record: Dict[str, Any], ttl: int) -> Dict[str, Any]:
        """Unconditionally write ``record``; returns it with the new version."""
        raise NotImplementedError

    async def compare_and_put(self, key: str, record: Dict[str, Any], ttl: int) -> Dict[str, Any]:
        """Write ``record`` only if the stored version equals ``record["version"]``."""
        raise NotImplementedError


# Compare the stored version and write in one server-side step.
# Returns 1 on success, 0 on version mismatch, -1 if the key is gone.
_CAS_SCRIPT = """
local cur = redis.call('GET', KEYS[1])
if not cur then return -1 end
local doc = cjson.decode(cur)
if tonumber(doc['version']) ~= tonumber(ARGV[1]) then return 0 end
redis.call('SET', KEYS[1], ARGV[2], 'EX', ARGV[3])
return 1
"""


class KVSessionStore(SessionStore):
    name = "kv"

    def __init__(self, url: str = None, token: str = None, timeout: float = None,
                 key_prefix: str = "story:", transport: httpx.AsyncBaseTransport = None):
        self.kv_rest_api_url = (url or settings.KV_REST_API_URL).rstrip("/")
        self.kv_rest_api_token = token or settings.KV_REST_API_TOKEN
        self.timeout = timeout or settings.KV_TIMEOUT_S
        self.key_prefix = key_prefix
        self._transport = transport
        if not self.kv_rest_api_url or not self.kv_rest_api_token:
            raise ValueError("KV_REST_API_URL and KV_REST_API_TOKEN are required for KV storage")

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.kv_rest_api_token}",
            "Content-Type": "application/json"
        }

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    async def _command(self, command: str, args: list) -> Any:
        # Upstash REST: the whole command as a JSON array in the body
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    self.kv_rest_api_url,
                    headers=self._headers(),
                    json=[command.upper(), *args]
                )
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"KV {command} failed: {e}")
            raise StorageError(f"KV {command} failed: {e}") from e
        if isinstance(data, dict) and data.get("error"):
            logger.error(f"KV {command} returned error: {data['error']}")
            raise StorageError(f"KV {command} returned error: {data['error']}")
        return data.get("result") if isinstance(data, dict) else None

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        result = await self._command("get", [self._key(key)])
        if not result:
            logger.info(f"Session {key} not found in KV")
            return None
        try:
            return json.loads(result)
        except ValueError as e:
            raise StorageError(f"Corrupt record for session {key}: {e}") from e

    async def put(self, key: str, record: Dict[str, Any], ttl: int) -> Dict[str, Any]:
        stored = {**record, "version": int(record.get("version", 0)) + 1}
        await self._command("set", [self._key(key), json.dumps(stored), "EX", int(ttl)])
        logger.info(f"Stored session {key} in KV (version {stored['version']})")
        return stored

    async def compare_and_put(self, key: str, record: Dict[str, Any], ttl: int) -> Dict[str, Any]:
        expected = int(record.get("version", 0))
        stored = {**record, "version": expected + 1}
        result = await self._command(
            "eval", [_CAS_SCRIPT, 1, self._key(key), expected, json.dumps(stored), int(ttl)]
        )
        if result == 1:
            logger.info(f"Stored session {key} in KV (version {stored['version']})")
            return stored
        if result == -1:
            raise VersionConflict(f"Session {key} expired before it could be saved")
        raise VersionConflict(f"Session {key} was modified concurrently (expected version {expected})")


class MemorySessionStore(SessionStore):
    """Process-local store. Data is lost on restart."""
    name = "memory"

    def __init__(self, clock: Callable[[], float] = time.monotonic, sweep_interval: float = 60.0):
        self._clock = clock
        self._lock = threading.Lock()
        self._items: Dict[str, Tuple[float, str]] = {}
        self._sweep_interval = sweep_interval
        self._next_sweep = clock() + sweep_interval

    def _sweep(self, now: float) -> None:
        # Abandoned stories are never read again; drop them on the write path.
        if now < self._next_sweep:
            return
        expired = [key for key, (expires_at, _) in self._items.items() if expires_at <= now]
        for key in expired:
            del self._items[key]
        if expired:
            logger.info(f"Dropped {len(expired)} expired sessions from memory")
        self._next_sweep = now + self._sweep_interval

    def _live(self, key: str) -> Optional[Dict[str, Any]]:
        item = self._items.get(key)
        if item is None:
            return None
        expires_at, raw = item
        if self._clock() >= expires_at:
            del self._items[key]
            return None
        return json.loads(raw)

    def _write(self, key: str, record: Dict[str, Any], ttl: int) -> Dict[str, Any]:
        now = self._clock()
        self._sweep(now)
        stored = {**record, "version": int(record.get("version", 0)) + 1}
        self._items[key] = (now + ttl, json.dumps(stored))
        return stored

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._live(key)

    async def put(self, key: str, record: Dict[str, Any], ttl: int) -> Dict[str, Any]:
        with self._lock:
            return self._write(key, record, ttl)

    async def compare_and_put(self, key: str, record: Dict[str, Any], ttl: int) -> Dict[str, Any]:
        with self._lock:
            current = self._live(key)
            if current is None:
                raise VersionConflict(f"Session {key} expired before it could be saved")
            if current.get("version") != record.get("version"):
                raise VersionConflict(
                    f"Session {key} was modified concurrently "
                    f"(expected version {record.get('version')}, found {current.get('version')})"
                )
            return self._write(key, record, ttl)


def build_session_store() -> SessionStore:
    if settings.has_kv_store():
        logger.info("KV storage enabled")
        return KVSessionStore()
    logger.warning("KV storage not configured - falling back to in-memory storage (sessions are lost on restart)")
    return MemorySessionStore()
