import importlib
import json

import pytest


support = importlib.import_module("tests.support")
cli = importlib.import_module("src.ingestion.cli")
config = importlib.import_module("src.ingestion.config")
pipeline_mod = importlib.import_module("src.ingestion.pipeline")
repository = importlib.import_module("src.ingestion.repository")

ENV_KEYS = ("RPC_URL", "CONTRACT_ADDRESS", "WEBHOOK_SECRET", "SUPABASE_DB_URL", "DATABASE_URL")


def test_cli_exposes_backfill_command():
    parser = cli.build_parser()
    args = parser.parse_args(["backfill", "--from-block", "10", "--to-block", "20"])

    assert args.command == "backfill"
    assert (args.from_block, args.to_block) == (10, 20)


def test_cli_exposes_top_referrers_with_defaults():
    args = cli.build_parser().parse_args(["top-referrers"])

    assert args.period == "all"
    assert args.limit == 10


def test_cli_rejects_unknown_period():
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args(["top-referrers", "--period", "decade"])


def test_missing_configuration_exits_with_status_2(monkeypatch, capsys):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)

    assert cli.main(["health"]) == 2
    assert "RPC_URL is required" in capsys.readouterr().err


def test_migrate_requires_database_url(monkeypatch):
    monkeypatch.delenv("SUPABASE_DB_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    assert cli.main(["migrate"]) == 2


def test_commission_stats_command_prints_json(monkeypatch, capsys):
    monkeypatch.setenv("RPC_URL", "https://rpc.example.com")
    monkeypatch.setenv("CONTRACT_ADDRESS", support.CONTRACT)
    monkeypatch.setenv("WEBHOOK_SECRET", "s3cret")
    monkeypatch.delenv("SUPABASE_DB_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    chain = support.FakeChainClient()

    def fake_build_pipeline(settings):
        return pipeline_mod.build_pipeline(
            settings, store=repository.InMemoryRepository(), chain_client=chain
        )

    monkeypatch.setattr(cli, "build_pipeline", fake_build_pipeline)
    monkeypatch.setattr(cli, "configure_logging", lambda level: None)

    exit_code = cli.main(
        ["commission-stats", "--user", support.wallet(1), "--start", "2026-01-01T00:00:00Z"]
    )

    assert exit_code == 0
    output = json.loads(capsys.readouterr().out)
    assert output["total_commission"] == "0"
    assert output["daily"] == []


def test_naive_datetime_is_rejected(monkeypatch, capsys):
    monkeypatch.setenv("RPC_URL", "https://rpc.example.com")
    monkeypatch.setenv("CONTRACT_ADDRESS", support.CONTRACT)
    monkeypatch.setenv("WEBHOOK_SECRET", "s3cret")
    monkeypatch.delenv("SUPABASE_DB_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setattr(
        cli,
        "build_pipeline",
        lambda settings: pipeline_mod.build_pipeline(
            settings,
            store=repository.InMemoryRepository(),
            chain_client=support.FakeChainClient(),
        ),
    )
    monkeypatch.setattr(cli, "configure_logging", lambda level: None)

    assert cli.main(["commission-stats", "--user", support.wallet(1), "--start", "2026-01-01"]) == 1
    assert "timezone offset" in capsys.readouterr().err


def test_housekeeping_command_reports_counts():
    settings = config.Settings(
        rpc_url="https://rpc.example.com",
        contract_address=support.CONTRACT,
        webhook_secret="s3cret",
    )
    pipeline = pipeline_mod.build_pipeline(
        settings, store=repository.InMemoryRepository(), chain_client=support.FakeChainClient()
    )

    result = cli.housekeeping_command(pipeline, archive_after_days=30, failed_commission_days=90)

    assert result == {"archived_events": 0, "archived_failed_commissions": 0}
