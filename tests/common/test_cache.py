import pytest

from common import cache


class FakeRedis:
    def __init__(self):
        self.store = {}

    def get(self, key):
        return self.store.get(key)

    def setex(self, key, ttl, value):
        self.store[key] = value

    def scan_iter(self, pattern):
        prefix = pattern.rstrip("*")
        return [k for k in list(self.store) if k.startswith(prefix)]

    def delete(self, key):
        self.store.pop(key, None)


@pytest.fixture
def fake_redis(monkeypatch):
    client = FakeRedis()
    monkeypatch.setattr(cache, "_redis_client", client)
    return client


def test_cache_disabled_without_redis_url(monkeypatch):
    monkeypatch.delenv("REDIS_URL", raising=False)
    cache.reset_redis_client()
    assert cache.get_redis_client() is None
    assert cache.get_cached_json("rooms:available:x") is None
    cache.set_cached_json("rooms:available:x", [1])
    cache.delete_prefix("rooms:available:")


def test_make_key():
    assert cache.make_key("rooms", "available", 42) == "rooms:available:42"


def test_json_round_trip(fake_redis):
    cache.set_cached_json("rooms:available:a", [{"id": 1}], ttl_seconds=5)
    assert cache.get_cached_json("rooms:available:a") == [{"id": 1}]


def test_delete_prefix_only_touches_matching_keys(fake_redis):
    cache.set_cached_json("rooms:available:a", [1])
    cache.set_cached_json("rooms:available:b", [2])
    cache.set_cached_json("users:1", {"id": 1})

    cache.delete_prefix("rooms:available:")
    assert list(fake_redis.store) == ["users:1"]


def test_malformed_redis_url_disables_cache(monkeypatch):
    monkeypatch.setenv("REDIS_URL", "localhost:6379")
    monkeypatch.setattr(cache, "_redis_client", None)
    assert cache.get_redis_client() is None
    cache.delete_prefix("rooms:available:")
    assert cache.get_cached_json("rooms:available:x") is None
