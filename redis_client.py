import redis.asyncio as redis
from config import settings

redis_client = redis.Redis.from_url(
    settings.REDIS_URL,
    decode_responses=True,
    socket_timeout=settings.AUDIT_STORE_TIMEOUT,
    socket_connect_timeout=settings.AUDIT_STORE_TIMEOUT,
)
