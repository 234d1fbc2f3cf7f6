import asyncio

import pytest

from allora_forge_relay.scheduler import InferenceScheduler, topic_interval_seconds


@pytest.mark.parametrize(
    "epoch_length, block_time, expected",
    [(60, 5, 300), (720, 5, 3600), (1, 5, 60), (17, 5, 60), (19, 5, 120)],
)
def test_topic_interval_rounds_to_minutes(epoch_length, block_time, expected):
    assert topic_interval_seconds(epoch_length, block_time) == expected


async def _wait_for(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


def _scheduler(store, connector, jobs, delays):
    async def parked_sleep(delay):
        delays.append(delay)
        await asyncio.Event().wait()

    return InferenceScheduler(
        store, connector, lambda job: jobs.append(job) or True, block_time_seconds=5, sleep=parked_sleep
    )


def test_sync_schedules_known_topics_and_ticks_immediately(store, connector):
    wallet_id = store.insert_wallet("allo1w", "wallet_mnemonic_w")
    first = store.add_model(7, "http://a", wallet_id)
    second = store.add_model(7, "http://b", wallet_id)
    store.add_model(9, "http://c", wallet_id)  # topic 9 does not exist on chain
    jobs, delays = [], []

    async def run():
        scheduler = _scheduler(store, connector, jobs, delays)
        await scheduler.sync()
        await _wait_for(lambda: len(delays) == 1)
        topics = scheduler.scheduled_topics
        intervals = dict(scheduler.intervals)
        await scheduler.stop()
        return topics, intervals

    topics, intervals = asyncio.run(run())

    assert topics == [7]
    assert intervals == {7: 300}
    assert delays == [300]
    assert {job.model_id for job in jobs} == {first, second}
    assert all(job.topic_id == 7 for job in jobs)


def test_inactive_topics_are_not_scheduled(store, connector, chain):
    chain.active = False
    store.add_model(7, "http://a", store.insert_wallet("allo1w", "wallet_mnemonic_w"))

    async def run():
        scheduler = _scheduler(store, connector, [], [])
        await scheduler.sync()
        topics = scheduler.scheduled_topics
        await scheduler.stop()
        return topics

    assert asyncio.run(run()) == []


def test_resync_drops_topics_without_active_models(store, connector):
    model_id = store.add_model(7, "http://a", store.insert_wallet("allo1w", "wallet_mnemonic_w"))
    jobs, delays = [], []

    async def run():
        scheduler = _scheduler(store, connector, jobs, delays)
        await scheduler.sync()
        await _wait_for(lambda: len(delays) == 1)
        store.set_model_active(model_id, False)
        await scheduler.sync()
        return scheduler.scheduled_topics

    assert asyncio.run(run()) == []


def test_run_stops_on_event(store, connector):
    store.add_model(7, "http://a", store.insert_wallet("allo1w", "wallet_mnemonic_w"))
    jobs, delays = [], []

    async def run():
        scheduler = _scheduler(store, connector, jobs, delays)
        stop = asyncio.Event()
        task = asyncio.create_task(scheduler.run(stop))
        await _wait_for(lambda: len(jobs) == 1)
        stop.set()
        await asyncio.wait_for(task, timeout=2)
        return scheduler.scheduled_topics

    assert asyncio.run(run()) == []
    assert len(jobs) == 1
