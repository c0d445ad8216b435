# parrainage/core/redis.py
import redis.asyncio as redis
from parrainage.core.config import settings

STARTUP_LOCK_KEY = "parrainage_startup_lock"

# decode_responses=True автоматически декодирует ответы из байтов в строки
redis_client = redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)


async def acquire_startup_lock(ttl_seconds: int = 60) -> bool:
    """
    Только один воркер получает блокировку и владеет планировщиком.
    """
    return bool(await redis_client.set(STARTUP_LOCK_KEY, "1", ex=ttl_seconds, nx=True))


async def release_startup_lock() -> None:
    await redis_client.delete(STARTUP_LOCK_KEY)
