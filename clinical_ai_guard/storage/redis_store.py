"""
Redis-backed shared store.

Used when request handlers run on more than one host.
"""

import json
from typing import Any, List, Optional

from redis import Redis
from redis.exceptions import WatchError

from .store import KeyValueStore

# KEYS[1] = counter key
# ARGV = [amount, ttl_seconds]
_LUA_INCREMENT_WITH_TTL = r"""
local v = redis.call('INCRBY', KEYS[1], ARGV[1])
if redis.call('TTL', KEYS[1]) < 0 then
  redis.call('EXPIRE', KEYS[1], ARGV[2])
end
return v
"""


def _encode(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def _decode(raw: Optional[bytes]) -> Any:
    if raw is None:
        return None
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode()
    return json.loads(raw)


class RedisStore(KeyValueStore):
    """Shared store on a Redis server.

    Counters use a server-side script so INCRBY and the first EXPIRE happen in
    one step. Other read-modify-writes use WATCH/MULTI.
    """

    supports_patterns = True

    def __init__(self, client: Redis, scan_count: int = 500):
        self._client = client
        self._scan_count = scan_count
        self._increment = client.register_script(_LUA_INCREMENT_WITH_TTL)

    @classmethod
    def from_url(cls, url: str) -> "RedisStore":
        """Build a store from a redis:// URL."""
        return cls(Redis.from_url(url))

    def get(self, key: str, default: Any = None) -> Any:
        value = _decode(self._client.get(key))
        return default if value is None else value

    def put(self, key: str, value: Any, ttl: int) -> None:
        self._client.set(key, _encode(value), ex=ttl)

    def forget(self, key: str) -> bool:
        return self._client.delete(key) > 0

    def increment_with_ttl(self, key: str, ttl: int, amount: int = 1) -> int:
        return int(self._increment(keys=[key], args=[amount, ttl]))

    def compare_and_set(self, key: str, expected: Any, new: Any, ttl: int) -> bool:
        with self._client.pipeline() as pipe:
            try:
                pipe.watch(key)
                if _decode(pipe.get(key)) != expected:
                    pipe.unwatch()
                    return False
                pipe.multi()
                pipe.set(key, _encode(new), ex=ttl)
                pipe.execute()
                return True
            except WatchError:
                return False

    def keys_matching(self, pattern: str) -> List[str]:
        out: List[str] = []
        # SCAN is incremental; scan_iter wraps it
        for k in self._client.scan_iter(match=pattern, count=self._scan_count):
            out.append(k.decode() if isinstance(k, (bytes, bytearray)) else str(k))
        return sorted(set(out))
