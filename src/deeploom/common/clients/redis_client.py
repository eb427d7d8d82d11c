"""
Redis Client pour les caches partagés DeepLoom.

Utilisé pour:
- Cache dictionnaire (surface normalisée → entrée)
- Table des durées de phase (ETA entre runs)

Si Redis est injoignable, le client reste déconnecté et les lectures
retournent None (cache miss) au lieu de faire échouer la compilation.
"""

import logging
from typing import Dict, Optional, Tuple
from urllib.parse import urlparse

import redis

logger = logging.getLogger(__name__)


def _parse_redis_url(redis_url: str) -> Tuple[str, int, int]:
    """
    Parse une URL Redis et retourne (host, port, db).

    Formats supportés:
    - redis://host:port/db
    - redis://host:port
    - redis://host
    """
    try:
        parsed = urlparse(redis_url)
        host = parsed.hostname or "localhost"
        port = parsed.port or 6379
        db = int(parsed.path.lstrip('/')) if parsed.path and parsed.path != '/' else 0
        return host, port, db
    except ValueError as e:
        logger.warning(f"[REDIS] Failed to parse REDIS_URL '{redis_url}': {e}")
        return "localhost", 6379, 0


class RedisClient:
    """Client Redis minimal (strings) avec tolérance aux pannes de connexion."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        decode_responses: bool = True,
        client: Optional[redis.Redis] = None,
    ):
        """
        Initialise client Redis.

        Args:
            host: Redis host
            port: Redis port
            db: Redis database number
            password: Redis password (si AUTH activé)
            decode_responses: Auto-decode bytes → str
            client: Client redis déjà construit (tests)
        """
        self.host = host
        self.port = port
        self.db = db

        if client is not None:
            self.client: Optional[redis.Redis] = client
            return

        try:
            self.client = redis.Redis(
                host=host,
                port=port,
                db=db,
                password=password,
                decode_responses=decode_responses,
                socket_timeout=5,
                socket_connect_timeout=5
            )
            self.client.ping()
            logger.info(f"[REDIS] Connected to {host}:{port} db={db}")

        except redis.RedisError as e:
            logger.error(f"[REDIS] Connection failed: {e}")
            self.client = None

    def is_connected(self) -> bool:
        """Vérifie si Redis est connecté."""
        if self.client is None:
            return False
        try:
            self.client.ping()
            return True
        except redis.RedisError:
            return False

    def get(self, key: str) -> Optional[str]:
        if self.client is None:
            return None
        try:
            return self.client.get(key)
        except redis.RedisError as e:
            logger.warning(f"[REDIS] GET {key} failed: {e}")
            return None

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> bool:
        if self.client is None:
            return False
        try:
            self.client.set(key, value, ex=ttl_seconds)
            return True
        except redis.RedisError as e:
            logger.warning(f"[REDIS] SET {key} failed: {e}")
            return False

    def set_many(self, items: Dict[str, str], ttl_seconds: Optional[int] = None) -> bool:
        """Écrit plusieurs clés en un seul aller-retour (pipeline)."""
        if self.client is None or not items:
            return False
        try:
            pipe = self.client.pipeline()
            for key, value in items.items():
                pipe.set(key, value, ex=ttl_seconds)
            pipe.execute()
            return True
        except redis.RedisError as e:
            logger.warning(f"[REDIS] Pipeline SET ({len(items)} keys) failed: {e}")
            return False


def create_redis_client(redis_url: str, password: Optional[str] = None) -> RedisClient:
    """Construit un RedisClient depuis une URL redis://host:port/db."""
    host, port, db = _parse_redis_url(redis_url)
    return RedisClient(host=host, port=port, db=db, password=password)
