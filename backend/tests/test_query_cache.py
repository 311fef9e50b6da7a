import asyncio

from imobcrm.services.query_cache import QueryCache


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_fetch_query_caches_loader_result():
    cache = QueryCache()
    calls = []

    def loader():
        calls.append(1)
        return [{"id": "a"}]

    first = asyncio.run(cache.fetch_query("leads", loader))
    second = asyncio.run(cache.fetch_query("leads", loader))

    assert first == second == [{"id": "a"}]
    assert len(calls) == 1


def test_stale_time_forces_refetch():
    clock = FakeClock()
    cache = QueryCache(clock=clock)
    values = iter([1, 2])

    assert asyncio.run(cache.fetch_query("dashboard-metrics", lambda: next(values), stale_time=60)) == 1
    clock.now = 59
    assert asyncio.run(cache.fetch_query("dashboard-metrics", lambda: next(values), stale_time=60)) == 1
    clock.now = 61
    assert asyncio.run(cache.fetch_query("dashboard-metrics", lambda: next(values), stale_time=60)) == 2


def test_cancelled_read_does_not_overwrite_cache():
    cache = QueryCache()
    cache.set_query_data("leads_funil", [{"lead_id": "L", "etapa_id": "B"}])
    cache.invalidate_queries("leads_funil")

    async def scenario():
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_loader():
            started.set()
            await release.wait()
            return [{"lead_id": "L", "etapa_id": "A"}]

        task = asyncio.ensure_future(cache.fetch_query("leads_funil", slow_loader))
        await started.wait()
        await cache.cancel_queries("leads_funil")
        cache.set_query_data("leads_funil", [{"lead_id": "L", "etapa_id": "C"}])
        release.set()
        return await task

    stale = asyncio.run(scenario())

    assert stale == [{"lead_id": "L", "etapa_id": "A"}]
    assert cache.get_query_data("leads_funil") == [{"lead_id": "L", "etapa_id": "C"}]


def test_get_query_data_returns_a_snapshot():
    cache = QueryCache()
    cache.set_query_data("leads", [{"nome": "Ana"}])

    snapshot = cache.get_query_data("leads")
    snapshot[0]["nome"] = "Outra"

    assert cache.get_query_data("leads") == [{"nome": "Ana"}]


def test_set_query_data_updater_keeps_missing_data_missing():
    cache = QueryCache()

    result = cache.set_query_data("leads_funil", lambda old: old)

    assert result is None
    assert cache.get_query_data("leads_funil") is None


def test_invalidate_queries_drops_only_named_keys():
    cache = QueryCache()
    cache.set_query_data("leads", [1])
    cache.set_query_data("imoveis", [2])

    cache.invalidate_queries("leads", "dashboard-metrics")

    assert cache.get_query_data("leads") is None
    assert cache.get_query_data("imoveis") == [2]
