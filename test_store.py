from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from allora_forge_relay.models import SubmissionStatus
from allora_forge_relay.store import RelayStore


def _wallet(store, n=1):
    return store.insert_wallet(f"allo1wallet{n}", f"wallet_mnemonic_{n}")


def test_wallet_round_trip(store):
    wallet_id = _wallet(store)

    wallet = store.get_wallet(wallet_id)

    assert wallet.address == "allo1wallet1"
    assert wallet.secret_ref == "wallet_mnemonic_1"
    assert store.get_wallet("missing") is None


def test_duplicate_secret_ref_is_rejected(store):
    _wallet(store)
    with pytest.raises(IntegrityError):
        store.insert_wallet("allo1other", "wallet_mnemonic_1")


def test_model_signing_details_join_the_wallet(store):
    wallet_id = _wallet(store)
    model_id = store.add_model(7, "http://m/predict", wallet_id, max_gas_price="20uallo")

    details = store.model_signing_details(model_id)

    assert details.topic_id == 7
    assert details.address == "allo1wallet1"
    assert details.secret_ref == "wallet_mnemonic_1"
    assert details.max_gas_price == "20uallo"
    assert store.model_signing_details("missing") is None


def test_active_models_and_topics(store):
    a = store.add_model(7, "http://a", _wallet(store, 1))
    b = store.add_model(9, "http://b", _wallet(store, 2))
    c = store.add_model(7, "http://c", _wallet(store, 3))
    store.set_model_active(c, False)

    assert {m.model_id for m in store.active_models()} == {a, b}
    assert [m.model_id for m in store.active_models(7)] == [a]
    assert store.active_topic_ids() == [7, 9]


def test_submissions_are_append_only_records(store):
    model_id = store.add_model(7, "http://a", _wallet(store))

    ok = store.record_submission(model_id, 7, SubmissionStatus.SUCCESS, 105, tx_hash="ABC")
    failed = store.record_submission(model_id, 7, "failed", 106, tx_hash="IGNORED", raw_log="out of gas")

    assert ok.status is SubmissionStatus.SUCCESS
    assert failed.tx_hash is None
    rows = store.submissions_for_model(model_id)
    assert [(r.status, r.nonce_height, r.tx_hash) for r in rows] == [
        (SubmissionStatus.SUCCESS, 105, "ABC"),
        (SubmissionStatus.FAILED, 106, None),
    ]
    assert rows[1].raw_log == "out of gas"
    assert rows[0].created_at is not None


def test_success_requires_tx_hash(store):
    model_id = store.add_model(7, "http://a", _wallet(store))
    with pytest.raises(ValueError):
        store.record_submission(model_id, 7, SubmissionStatus.SUCCESS, 105)


def test_file_database_creates_its_directory(tmp_path):
    db_path = tmp_path / "nested" / "relay.db"

    store = RelayStore.from_url(f"sqlite:///{db_path}")
    store.insert_wallet("allo1file", "wallet_mnemonic_file")

    assert db_path.exists()


def test_performance_samples_newest_first(store):
    model_id = store.add_model(7, "http://a", _wallet(store))
    earlier = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
    later = earlier + timedelta(minutes=15)

    store.record_performance(model_id, Decimal("0.5"), timestamp=earlier)
    stored = store.record_performance(model_id, Decimal("-0.25"), timestamp=later)

    assert stored.ema_score == Decimal("-0.25")
    history = store.performance_history(model_id)
    assert [metric.timestamp.replace(tzinfo=None) for metric in history] == [
        later.replace(tzinfo=None),
        earlier.replace(tzinfo=None),
    ]
    assert [metric.ema_score for metric in history] == [Decimal("-0.25"), Decimal("0.5")]
    assert store.performance_history("missing") == []


def test_second_sample_at_the_same_timestamp_is_ignored(store):
    model_id = store.add_model(7, "http://a", _wallet(store))
    moment = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    assert store.record_performance(model_id, Decimal("1"), timestamp=moment) is not None
    assert store.record_performance(model_id, Decimal("2"), timestamp=moment) is None
    assert [metric.ema_score for metric in store.performance_history(model_id)] == [Decimal("1")]
