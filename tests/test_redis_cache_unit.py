from redis.exceptions import ResponseError

from portalcore.storage.redis_cache import SSO_STATE_PREFIX, SyncRedisCache


class FakeRedis:
    def __init__(self, *, supports_getdel: bool = True):
        self.data = {}
        self.ttls = {}
        self.supports_getdel = supports_getdel
        self.eval_calls = 0

    def ping(self):
        return True

    def set(self, key, value, ex=None):
        self.data[key] = value
        self.ttls[key] = ex

    def getdel(self, key):
        if not self.supports_getdel:
            raise ResponseError("unknown command 'GETDEL'")
        return self.data.pop(key, None)

    def eval(self, script, numkeys, key):
        self.eval_calls += 1
        return self.data.pop(key, None)

    def close(self):
        pass


async def test_sso_state_is_single_use():
    fake = FakeRedis()
    cache = SyncRedisCache("redis://unused", client=fake)

    await cache.set_sso_state("abc", "google", 300)
    assert fake.ttls[f"{SSO_STATE_PREFIX}abc"] == 300

    assert await cache.pop_sso_state("abc") == "google"
    assert await cache.pop_sso_state("abc") is None


async def test_sso_state_ttl_never_below_one_second():
    fake = FakeRedis()
    cache = SyncRedisCache("redis://unused", client=fake)
    await cache.set_sso_state("abc", "github", 0)
    assert fake.ttls[f"{SSO_STATE_PREFIX}abc"] == 1


async def test_pop_falls_back_to_script_without_getdel():
    fake = FakeRedis(supports_getdel=False)
    cache = SyncRedisCache("redis://unused", client=fake)
    await cache.set_sso_state("xyz", "microsoft", 60)

    assert await cache.pop_sso_state("xyz") == "microsoft"
    assert fake.eval_calls == 1
    assert await cache.pop_sso_state("xyz") is None


async def test_ping_reports_health():
    cache = SyncRedisCache("redis://unused", client=FakeRedis())
    assert await cache.ping() is True
