import pytest

from allora_forge_relay.errors import (
    ChainCommandError,
    ChainErrorAction,
    LedgerRejectedError,
    classify_chain_error,
    expected_sequence,
)


@pytest.mark.parametrize(
    "error, action",
    [
        (ChainCommandError("account sequence mismatch, expected 12, got 11"), ChainErrorAction.RESET_SEQUENCE),
        (ChainCommandError("post failed", stderr="dial tcp 10.0.0.1:26657: connection refused"), ChainErrorAction.SWITCH_NODE),
        (ChainCommandError("allorad query timed out after 30s"), ChainErrorAction.SWITCH_NODE),
        (LedgerRejectedError(11, "out of gas in location: WriteFlat"), ChainErrorAction.RETRY),
        (LedgerRejectedError(5, "insufficient funds: 3uallo is smaller than 10uallo"), ChainErrorAction.FAIL),
        (LedgerRejectedError(13, "insufficient fee"), ChainErrorAction.FAIL),
        (ChainCommandError("something unexpected"), ChainErrorAction.RETRY),
    ],
)
def test_classification(error, action):
    assert classify_chain_error(error) is action


def test_expected_sequence():
    assert expected_sequence(LedgerRejectedError(32, "account sequence mismatch, expected 42, got 41")) == 42
    assert expected_sequence(ChainCommandError("connection refused")) is None
