import asyncio

import pytest

from allora_forge_relay.errors import ChainCommandError
from allora_forge_relay.models import TopicDetails
from allora_forge_relay.nonce import NonceWindowResolver, in_window, scan_heights, submission_window

from conftest import topic_payload


def _topic(epoch_last_ended=100, window=10):
    return TopicDetails(id=7, epoch_length=60, epoch_last_ended=epoch_last_ended, worker_submission_window=window)


@pytest.mark.parametrize(
    "height, expected",
    [(100, False), (101, True), (105, True), (110, True), (111, False), (95, False)],
)
def test_window_bounds_are_inclusive(height, expected):
    topic = _topic()
    assert submission_window(topic) == (101, 110)
    assert in_window(topic, height) is expected


def test_scan_heights_most_recent_first_and_capped_by_window():
    assert scan_heights(_topic(), 105) == [105, 104, 103, 102, 101]
    assert scan_heights(_topic(), 200) == list(range(110, 100, -1))


def test_scan_heights_capped_by_depth_for_large_windows():
    heights = scan_heights(_topic(epoch_last_ended=0, window=10_000), 9_000)
    assert len(heights) == 200
    assert heights[0] == 9_000
    assert heights[-1] == 8_801


def test_open_nonce_inside_window(connector, chain):
    resolver = NonceWindowResolver(connector)

    nonce = asyncio.run(resolver.derive_open_nonce(7))

    assert nonce == 105


def test_most_recent_unfulfilled_height_wins(connector, chain):
    chain.height = 108
    chain.unfulfilled = {102, 106}

    nonce = asyncio.run(NonceWindowResolver(connector).derive_open_nonce(7))

    assert nonce == 106
    checked = [call[2] for call in chain.calls if call[0] == "is_worker_nonce_unfulfilled"]
    assert checked == [108, 107, 106]


def test_outside_window_returns_none_without_scanning(connector, chain):
    chain.height = 95

    nonce = asyncio.run(NonceWindowResolver(connector).derive_open_nonce(7))

    assert nonce is None
    assert chain.count("is_worker_nonce_unfulfilled") == 0
    assert chain.count("topic") == 1
    assert chain.count("latest_height") == 1


def test_scan_never_exceeds_depth_cap(connector, chain):
    chain.topics[7] = topic_payload(epoch_last_ended=1_000, window=5_000)
    chain.height = 4_000
    chain.unfulfilled = set()

    nonce = asyncio.run(NonceWindowResolver(connector).derive_open_nonce(7))

    assert nonce is None
    assert chain.count("is_worker_nonce_unfulfilled") == 200


def test_configured_depth_lowers_the_cap(connector, chain):
    chain.unfulfilled = set()

    asyncio.run(NonceWindowResolver(connector, scan_depth=3).derive_open_nonce(7))

    assert chain.count("is_worker_nonce_unfulfilled") == 3


def test_unreadable_topic_yields_none(connector, chain):
    chain.failures["topic"] = ChainCommandError("connection refused")

    assert asyncio.run(NonceWindowResolver(connector).derive_open_nonce(7)) is None
    assert chain.count("latest_height") == 0


def test_can_submit_fails_open(connector, chain):
    chain.failures["can_submit_worker_payload"] = ChainCommandError("timeout")

    assert asyncio.run(NonceWindowResolver(connector).can_submit(7, "allo1worker")) is True


def test_can_submit_respects_explicit_denial(connector, chain):
    chain.can_submit = False

    assert asyncio.run(NonceWindowResolver(connector).can_submit(7, "allo1worker")) is False


def test_window_revalidation_detects_advanced_height(connector, chain):
    resolver = NonceWindowResolver(connector)
    assert asyncio.run(resolver.window_is_open(7, 105)) is True

    chain.height = 111
    assert asyncio.run(resolver.window_is_open(7, 105)) is False
