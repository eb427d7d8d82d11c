"""
Stores clé-valeur injectés
==========================

Les caches partagés du compilateur (dictionnaire, durées de phase) ne sont
pas des singletons de module: ils reçoivent un IKVStore à la construction.

- InMemoryKVStore: tests et runs one-shot
- RedisKVStore: production (valeurs sérialisées en JSON)
"""

import json
import logging
from typing import Any, Dict, Mapping, Optional, Protocol

from deeploom.common.clients.redis_client import RedisClient, create_redis_client

logger = logging.getLogger(__name__)


class IKVStore(Protocol):
    """Interface minimale des caches partagés."""

    def get(self, key: str) -> Optional[Any]:
        ...

    def set(self, key: str, value: Any) -> None:
        ...

    def set_many(self, items: Mapping[str, Any]) -> None:
        ...


class InMemoryKVStore:
    """Store en mémoire de process; les valeurs sont copiées via JSON pour isoler l'appelant."""

    def __init__(self, initial: Optional[Mapping[str, Any]] = None):
        self._data: Dict[str, str] = {}
        self.writes = 0
        if initial:
            self.set_many(initial)

    def get(self, key: str) -> Optional[Any]:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    def set(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value, ensure_ascii=False)
        self.writes += 1

    def set_many(self, items: Mapping[str, Any]) -> None:
        for key, value in items.items():
            self._data[key] = json.dumps(value, ensure_ascii=False)
        self.writes += 1

    def keys(self):
        return list(self._data.keys())

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: str) -> bool:
        return key in self._data


class RedisKVStore:
    """Store Redis; clés préfixées par namespace (ex: deeploom:dictionary:<mot>)."""

    def __init__(
        self,
        client: RedisClient,
        namespace: str,
        ttl_seconds: Optional[int] = None,
    ):
        self.client = client
        self.namespace = namespace
        self.ttl_seconds = ttl_seconds

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    def get(self, key: str) -> Optional[Any]:
        raw = self.client.get(self._key(key))
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"[KV_STORE] Corrupted value for {self._key(key)}, ignoring")
            return None

    def set(self, key: str, value: Any) -> None:
        self.client.set(
            self._key(key),
            json.dumps(value, ensure_ascii=False),
            ttl_seconds=self.ttl_seconds,
        )

    def set_many(self, items: Mapping[str, Any]) -> None:
        payload = {
            self._key(key): json.dumps(value, ensure_ascii=False)
            for key, value in items.items()
        }
        self.client.set_many(payload, ttl_seconds=self.ttl_seconds)


def build_kv_store(namespace: str, backend: Optional[str] = None) -> IKVStore:
    """
    Construit le store configuré (DEEPLOOM_CACHE_BACKEND).

    Un backend redis injoignable retombe sur la mémoire avec un warning.
    """
    from deeploom.config.settings import get_settings

    settings = get_settings()
    backend = (backend or settings.cache_backend).lower()
    if backend == "redis":
        client = create_redis_client(settings.redis_url)
        if client.is_connected():
            return RedisKVStore(client, f"{settings.cache_key_prefix}:{namespace}")
        logger.warning(
            f"[KV_STORE] Redis unavailable for '{namespace}', using in-memory store"
        )
    return InMemoryKVStore()
