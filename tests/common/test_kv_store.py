"""
Tests des stores clé-valeur injectés.
"""

import redis

from deeploom.common.clients.redis_client import RedisClient, _parse_redis_url
from deeploom.common.kv_store import InMemoryKVStore, RedisKVStore, build_kv_store


class FakeRedis:
    """Sous-ensemble de redis.Redis (get/set/pipeline/ping)."""

    def __init__(self):
        self.data = {}
        self.ttls = {}

    def ping(self):
        return True

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value, ex=None):
        self.data[key] = value
        self.ttls[key] = ex

    def pipeline(self):
        return FakePipeline(self)


class FakePipeline:
    def __init__(self, owner):
        self.owner = owner
        self.ops = []

    def set(self, key, value, ex=None):
        self.ops.append((key, value, ex))

    def execute(self):
        for key, value, ex in self.ops:
            self.owner.set(key, value, ex=ex)


class BrokenRedis(FakeRedis):
    def ping(self):
        raise redis.ConnectionError("down")

    def get(self, key):
        raise redis.ConnectionError("down")


class TestInMemoryKVStore:
    """Store mémoire: copies JSON, compteur d'écritures."""

    def test_get_missing(self):
        assert InMemoryKVStore().get("nope") is None

    def test_values_are_isolated_from_caller(self):
        store = InMemoryKVStore()
        value = {"samples": [1, 2]}
        store.set("k", value)
        value["samples"].append(3)

        assert store.get("k") == {"samples": [1, 2]}

    def test_set_many_is_one_write(self):
        store = InMemoryKVStore()
        store.set_many({"a": 1, "b": {"entry": None}})

        assert store.writes == 1
        assert store.get("b") == {"entry": None}
        assert "a" in store and len(store) == 2

    def test_initial_values(self):
        store = InMemoryKVStore({"x": [1]})

        assert store.get("x") == [1]


class TestRedisKVStore:
    """Store Redis: namespace, JSON, tolérance aux pannes."""

    def test_roundtrip_with_namespace(self):
        fake = FakeRedis()
        store = RedisKVStore(RedisClient(client=fake), "deeploom:dictionary", ttl_seconds=60)
        store.set("dhamma", {"entry": {"pos": "m"}})

        assert "deeploom:dictionary:dhamma" in fake.data
        assert fake.ttls["deeploom:dictionary:dhamma"] == 60
        assert store.get("dhamma") == {"entry": {"pos": "m"}}

    def test_set_many_uses_pipeline(self):
        fake = FakeRedis()
        store = RedisKVStore(RedisClient(client=fake), "ns")
        store.set_many({"a": 1, "b": 2})

        assert store.get("a") == 1 and store.get("b") == 2

    def test_corrupted_value_is_a_miss(self):
        fake = FakeRedis()
        fake.data["ns:k"] = "{not json"
        store = RedisKVStore(RedisClient(client=fake), "ns")

        assert store.get("k") is None

    def test_connection_errors_are_misses(self):
        client = RedisClient(client=BrokenRedis())

        assert client.is_connected() is False
        assert RedisKVStore(client, "ns").get("k") is None


class TestBuildKVStore:
    """Sélection du backend configuré."""

    def test_memory_backend(self, runtime_env, monkeypatch):
        monkeypatch.setenv("DEEPLOOM_CACHE_BACKEND", "memory")
        runtime_env.settings_module.get_settings.cache_clear()

        assert isinstance(build_kv_store("dictionary"), InMemoryKVStore)

    def test_unreachable_redis_falls_back_to_memory(self, runtime_env, monkeypatch):
        import deeploom.common.kv_store as kv_module

        monkeypatch.setattr(kv_module, "create_redis_client", lambda url: RedisClient(client=BrokenRedis()))

        assert isinstance(build_kv_store("telemetry", backend="redis"), InMemoryKVStore)


def test_parse_redis_url():
    assert _parse_redis_url("redis://cache:6380/2") == ("cache", 6380, 2)
    assert _parse_redis_url("redis://localhost") == ("localhost", 6379, 0)
