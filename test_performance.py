import asyncio
from decimal import Decimal

from allora_forge_relay.performance import PerformanceCollector


def _models(store, chain):
    scored = store.add_model(7, "http://a", store.insert_wallet("allo1scored", "wallet_mnemonic_a"))
    unscored = store.add_model(7, "http://b", store.insert_wallet("allo1unscored", "wallet_mnemonic_b"))
    retired = store.add_model(9, "http://c", store.insert_wallet("allo1retired", "wallet_mnemonic_c"))
    store.set_model_active(retired, False)
    chain.scores.update({"allo1scored": "0.75", "allo1retired": "0.1"})
    return scored, unscored, retired


def test_sweep_stores_scores_and_skips_unavailable_ones(store, connector, chain):
    scored, unscored, retired = _models(store, chain)

    stored = asyncio.run(PerformanceCollector(store, connector).collect_once())

    assert stored == 1
    assert [metric.ema_score for metric in store.performance_history(scored)] == [Decimal("0.75")]
    assert store.performance_history(unscored) == []
    assert store.performance_history(retired) == []
    assert ("inferer_score_ema", 9, "allo1retired") not in chain.calls


def test_store_failure_of_one_model_does_not_stop_the_sweep(store, connector, chain, monkeypatch):
    first = store.add_model(7, "http://a", store.insert_wallet("allo1first", "wallet_mnemonic_a"))
    second = store.add_model(7, "http://b", store.insert_wallet("allo1second", "wallet_mnemonic_b"))
    chain.scores.update({"allo1first": "1", "allo1second": "2"})
    record = store.record_performance

    def flaky_record(model_id, ema_score, timestamp=None):
        if model_id == first:
            raise RuntimeError("database is locked")
        return record(model_id, ema_score, timestamp)

    monkeypatch.setattr(store, "record_performance", flaky_record)

    assert asyncio.run(PerformanceCollector(store, connector).collect_once()) == 1
    assert [metric.ema_score for metric in store.performance_history(second)] == [Decimal("2")]


def test_run_sweeps_immediately_and_stops_on_event(store, connector, chain):
    scored, _, _ = _models(store, chain)

    async def run():
        stop = asyncio.Event()
        collector = PerformanceCollector(store, connector, interval=3600)
        task = asyncio.create_task(collector.run(stop))
        loop = asyncio.get_running_loop()
        deadline = loop.time() + 2.0
        while not chain.count("inferer_score_ema"):
            assert loop.time() < deadline, "first sweep did not run"
            await asyncio.sleep(0.01)
        stop.set()
        await asyncio.wait_for(task, timeout=2.0)

    asyncio.run(run())

    assert len(store.performance_history(scored)) == 1
    assert chain.count("inferer_score_ema") == 1 + 3
