from redis import asyncio as aioredis
from redis.asyncio.connection import ConnectionPool as AsyncConnectionPool
from ..core.config import settings
import asyncio
import threading
from typing import Dict

# Sync runs are short-lived asyncio.run() loops, so clients are kept per loop
_clients: Dict[str, aioredis.Redis] = {}


def _loop_key() -> str:
	"""Identity of the running event loop, or of the thread outside a loop."""
	try:
		return f"loop-{id(asyncio.get_running_loop())}"
	except RuntimeError:
		return f"thread-{threading.get_ident()}"


def _make_pool() -> AsyncConnectionPool:
	# Locks and counters only: a small pool is plenty
	return AsyncConnectionPool.from_url(
		settings.redis_url,
		decode_responses=True,
		max_connections=20,
		socket_connect_timeout=5,
		socket_timeout=5,
		retry_on_timeout=True,
	)


def get_redis() -> aioredis.Redis:
	"""Async Redis client for the current loop, created on first use."""
	key = _loop_key()
	if key not in _clients:
		_clients[key] = aioredis.Redis(connection_pool=_make_pool())
	return _clients[key]


async def close_redis() -> None:
	"""Close this loop's client and its pool; call before the loop ends."""
	client = _clients.pop(_loop_key(), None)
	if client is not None:
		await client.aclose(close_connection_pool=True)
