"""Pytest configuration for shared test fixtures and setup."""

from pathlib import Path
from typing import Dict, Iterable, List, Optional

import pytest
from dotenv import load_dotenv

from allora_forge_relay.broadcaster import BankSend, BroadcastResult
from allora_forge_relay.config import RelayConfig
from allora_forge_relay.connector import LedgerConnector
from allora_forge_relay.errors import ChainCommandError
from allora_forge_relay.retry import RetryPolicy
from allora_forge_relay.secret_store import InMemorySecretStore
from allora_forge_relay.signing import generate_mnemonic
from allora_forge_relay.store import RelayStore


# Ensure the project's .env file is loaded for all tests so optional settings
# are available without needing to export them manually.
ROOT_DIR = Path(__file__).resolve().parent
load_dotenv(ROOT_DIR / ".env", override=False)

MODEL_MNEMONIC = generate_mnemonic(b"\x00" * 32)
TREASURY_MNEMONIC = generate_mnemonic(b"\x01" * 32)


class SleepRecorder:
    """Stand-in for ``asyncio.sleep`` that returns immediately."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay):
        self.delays.append(delay)


class FakeReader:
    """In-memory chain with call recording and injectable failures."""

    def __init__(
        self,
        topics: Optional[Dict[int, dict]] = None,
        height: int = 0,
        unfulfilled: Iterable[int] = (),
        balances: Optional[Dict[str, int]] = None,
        can_submit: bool = True,
        inferers: Iterable[str] = (),
        active: bool = True,
        scores: Optional[Dict[str, str]] = None,
    ):
        self.topics = topics or {}
        self.height = height
        self.unfulfilled = set(unfulfilled)
        self.balances = dict(balances or {})
        self.can_submit = can_submit
        self.inferers = list(inferers)
        self.active = active
        self.scores = dict(scores or {})
        self.calls: List[tuple] = []
        self.failures: Dict[str, Exception] = {}

    def _enter(self, name, *args):
        self.calls.append((name, *args))
        if name in self.failures:
            raise self.failures[name]

    def count(self, name):
        return sum(1 for call in self.calls if call[0] == name)

    async def topic(self, topic_id):
        self._enter("topic", topic_id)
        if topic_id not in self.topics:
            raise ChainCommandError(f"topic {topic_id} not found")
        return self.topics[topic_id]

    async def is_topic_active(self, topic_id):
        self._enter("is_topic_active", topic_id)
        return self.active

    async def latest_height(self):
        self._enter("latest_height")
        return self.height

    async def is_worker_nonce_unfulfilled(self, topic_id, height):
        self._enter("is_worker_nonce_unfulfilled", topic_id, height)
        return height in self.unfulfilled

    async def can_submit_worker_payload(self, topic_id, address):
        self._enter("can_submit_worker_payload", topic_id, address)
        return self.can_submit

    async def balance(self, address, denom):
        self._enter("balance", address, denom)
        return self.balances.get(address, 0)

    async def active_inferers(self, topic_id):
        self._enter("active_inferers", topic_id)
        return list(self.inferers)

    async def active_topics_at_block(self, height):
        self._enter("active_topics_at_block", height)
        return [{"id": topic_id, "metadata": f"Topic {topic_id}"} for topic_id in sorted(self.topics)]

    async def inferer_score_ema(self, topic_id, address):
        self._enter("inferer_score_ema", topic_id, address)
        if address not in self.scores:
            raise ChainCommandError(f"no score for {address} on topic {topic_id}")
        return self.scores[address]


class FakeBroadcaster:
    """Records transactions; bank sends credit the reader's balances."""

    def __init__(self, reader: Optional[FakeReader] = None, gas: int = 100_000, responses=None):
        self.reader = reader
        self.gas = gas
        self.responses = list(responses or [])
        self.simulated = []
        self.broadcasts = []

    async def simulate(self, signer_mnemonic, msg):
        self.simulated.append(msg)
        return self.gas

    async def broadcast(self, signer_mnemonic, msg, *, gas, fees):
        self.broadcasts.append({"signer": signer_mnemonic, "msg": msg, "gas": gas, "fees": fees})
        if self.responses:
            response = self.responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return response
        if isinstance(msg, BankSend) and self.reader is not None:
            amount = int(msg.amount.rstrip("abcdefghijklmnopqrstuvwxyz"))
            self.reader.balances[msg.to_address] = self.reader.balances.get(msg.to_address, 0) + amount
        return BroadcastResult(tx_hash=f"TX{len(self.broadcasts)}")


def topic_payload(epoch_last_ended=100, window=10, epoch_length=60, topic_id=7):
    return {
        "id": str(topic_id),
        "creator": "allo1creator",
        "metadata": "ETH 10min prediction",
        "epoch_length": str(epoch_length),
        "epoch_last_ended": str(epoch_last_ended),
        "worker_submission_window": str(window),
    }


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()


@pytest.fixture
def relay_config():
    return RelayConfig(treasury_secret_key="treasury", database_url="sqlite://")


@pytest.fixture
def store():
    return RelayStore.from_url("sqlite://")


@pytest.fixture
def secrets():
    store = InMemorySecretStore()
    store.put("treasury", TREASURY_MNEMONIC)
    return store


@pytest.fixture
def chain():
    return FakeReader(topics={7: topic_payload()}, height=105, unfulfilled={105})


@pytest.fixture
def broadcaster(chain):
    return FakeBroadcaster(chain)


@pytest.fixture
def connector(chain, broadcaster, sleep_recorder):
    return LedgerConnector(chain, broadcaster, policy=RetryPolicy(max_attempts=3, base_delay=1.0), sleep=sleep_recorder)
