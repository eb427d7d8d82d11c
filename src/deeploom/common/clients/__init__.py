from .http import build_async_http_client
from .openai_client import get_async_openai_client
from .redis_client import RedisClient, create_redis_client

__all__ = [
    "build_async_http_client",
    "get_async_openai_client",
    "RedisClient",
    "create_redis_client",
]
