import importlib


pipeline = importlib.import_module("src.ingestion.pipeline")


def test_pipeline_module_loads():
    assert hasattr(pipeline, "build_pipeline")


def test_pipeline_has_orchestration_entrypoint():
    assert hasattr(pipeline, "run_pipeline")


def test_every_worker_module_imports():
    for name in (
        "src.ingestion.poller",
        "src.ingestion.admin_service",
        "src.ingestion.cli",
        "src.delivery.dispatcher",
        "src.referral.ledger",
        "src.reconciliation.job",
    ):
        assert importlib.import_module(name) is not None
