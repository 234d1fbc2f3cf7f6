import asyncio
import dataclasses
from decimal import Decimal

import pytest

from allora_forge_relay import cli
from allora_forge_relay.chain_reader import AlloradCliReader, AlloradRunner, NodeRing, SdkChainReader
from allora_forge_relay.cli import (
    _collect_performance,
    _create_wallet,
    _performance_history,
    _register_model,
    build_parser,
)
from allora_forge_relay.runtime import Relay, build_reader


def test_reader_selection(relay_config):
    runner = AlloradRunner("allorad", NodeRing(relay_config.rpc_urls))

    assert isinstance(build_reader(relay_config, runner), AlloradCliReader)
    sdk = build_reader(dataclasses.replace(relay_config, chain_reader="sdk"), runner)
    assert isinstance(sdk, SdkChainReader)
    assert sdk.chain_id == relay_config.chain_id


def test_relay_wires_shared_collaborators(relay_config, store, secrets):
    relay = Relay.from_config(relay_config, store=store, secrets=secrets)

    assert relay.pipeline.store is store
    assert relay.provisioner.secrets is secrets
    assert relay.resolver.connector is relay.connector
    assert relay.pipeline.connector is relay.connector


def test_register_model_creates_wallet_and_model(relay_config, store, secrets, capsys):
    relay = Relay.from_config(relay_config, store=store, secrets=secrets)

    code = asyncio.run(_register_model(relay, 7, "http://model/predict", "20uallo"))

    assert code == 0
    out = capsys.readouterr().out
    model_id = out.split()[0].split("=", 1)[1]
    details = store.model_signing_details(model_id)
    assert details.topic_id == 7
    assert details.max_gas_price == "20uallo"
    assert secrets.get(details.secret_ref)
    assert f"address={details.address}" in out


def test_create_wallet_prints_reference_not_mnemonic(relay_config, store, secrets, capsys):
    relay = Relay.from_config(relay_config, store=store, secrets=secrets)

    assert asyncio.run(_create_wallet(relay)) == 0

    out = capsys.readouterr().out
    secret_ref = out.split("secret_ref=")[1].strip()
    assert secrets.get(secret_ref) not in out


def test_parser_subcommands():
    parser = build_parser()

    args = parser.parse_args(["register-model", "--topic-id", "7", "--webhook-url", "http://m"])
    assert (args.command, args.topic_id, args.max_gas_price) == ("register-model", 7, None)
    assert parser.parse_args(["run"]).drain_timeout == 120.0
    assert parser.parse_args(["nonce", "--topic-id", "9"]).topic_id == 9
    assert parser.parse_args(["performance-history", "--model-id", "m1"]).model_id == "m1"


def test_register_model_warns_when_secrets_are_ephemeral(relay_config, store, secrets, caplog):
    relay = Relay.from_config(relay_config, store=store, secrets=secrets)

    with caplog.at_level("WARNING", logger="allora_forge_relay.wallet"):
        assert asyncio.run(_register_model(relay, 7, "http://model/predict", None)) == 0

    assert "mnemonic is lost" in caplog.text


def test_secret_backend_misconfiguration_exits_cleanly(tmp_path, monkeypatch, capsys):
    for name in ("SECRETS_BACKEND", "JOBS_BYPASS_CAN_SUBMIT", "VAULT_ADDR", "VAULT_TOKEN"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("RELAY_ENV", "production")
    monkeypatch.setenv("DATABASE_URL", "sqlite://")
    monkeypatch.setattr(cli, "initialise_logging", lambda root, level: root)

    with pytest.raises(SystemExit) as excinfo:
        cli.main(["--root", str(tmp_path), "create-wallet"])

    assert excinfo.value.code == 1
    assert "in-memory secret store cannot be used in production" in capsys.readouterr().err


def test_collect_performance_then_print_history(relay_config, store, secrets, connector, chain, capsys):
    relay = dataclasses.replace(Relay.from_config(relay_config, store=store, secrets=secrets), connector=connector)
    model_id = store.add_model(7, "http://a", store.insert_wallet("allo1scored", "wallet_mnemonic_a"))
    chain.scores["allo1scored"] = "0.5"

    assert asyncio.run(_collect_performance(relay)) == 0
    assert _performance_history(relay, model_id) == 0

    lines = capsys.readouterr().out.splitlines()
    assert lines[0] == "stored=1"
    assert len(lines) == 2
    assert Decimal(lines[1].split()[1]) == Decimal("0.5")


def test_run_collects_performance_until_stopped(relay_config, store, secrets, connector, chain):
    chain.active = False  # keeps the scheduler idle
    relay = dataclasses.replace(Relay.from_config(relay_config, store=store, secrets=secrets), connector=connector)
    model_id = store.add_model(7, "http://a", store.insert_wallet("allo1scored", "wallet_mnemonic_a"))
    chain.scores["allo1scored"] = "0.25"

    async def run():
        stop = asyncio.Event()
        task = asyncio.create_task(relay.run(stop, drain_timeout=1.0))
        loop = asyncio.get_running_loop()
        deadline = loop.time() + 2.0
        while not chain.count("inferer_score_ema"):
            assert loop.time() < deadline, "collector did not run"
            await asyncio.sleep(0.01)
        stop.set()
        await asyncio.wait_for(task, timeout=5.0)

    asyncio.run(run())

    assert [metric.ema_score for metric in store.performance_history(model_id)] == [Decimal("0.25")]
