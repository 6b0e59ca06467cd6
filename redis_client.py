import redis

from config import settings


def make_redis(url: str) -> redis.Redis:
    return redis.Redis.from_url(
        url,
        decode_responses=True,
        socket_timeout=0.5,
        socket_connect_timeout=0.5,
    )


redis_client = make_redis(settings.REDIS_URL)
