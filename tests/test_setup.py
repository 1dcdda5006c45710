"""Tests for the packaged surface: metadata, exports, console script and schema."""

import importlib
import tomllib
from pathlib import Path

import pytest

import solana_wallet_analyzer
from solana_wallet_analyzer.__main__ import main
from solana_wallet_analyzer.storage import Base

PYPROJECT = tomllib.loads((Path(__file__).parents[1] / "pyproject.toml").read_text())


def test_version_matches_project_metadata() -> None:
    assert solana_wallet_analyzer.__version__ == PYPROJECT["project"]["version"]


def test_console_script_points_at_cli() -> None:
    target = PYPROJECT["project"]["scripts"]["solana-wallet-analyzer"]
    module_name, _, attribute = target.partition(":")

    assert getattr(importlib.import_module(module_name), attribute) is main


@pytest.mark.parametrize(
    "package",
    [
        "solana_wallet_analyzer.analysis",
        "solana_wallet_analyzer.ingestor",
        "solana_wallet_analyzer.storage",
    ],
)
def test_exports_resolve(package: str) -> None:
    module = importlib.import_module(package)

    missing = [name for name in module.__all__ if not hasattr(module, name)]
    assert missing == []


def test_job_control_is_exported() -> None:
    from solana_wallet_analyzer.analysis import AnalysisWorker, JobService, QueueManager

    assert callable(JobService.start_analysis)
    assert callable(QueueManager.run_admission_pass)
    assert callable(AnalysisWorker.run_job)


def test_schema_tables() -> None:
    assert set(Base.metadata.tables) == {
        "analysis_jobs",
        "token_aggregates",
        "tokens",
        "price_cache",
        "transaction_cache",
    }
