from __future__ import annotations

import importlib

import pytest


def test_console_entrypoint_exposes_app() -> None:
    pytest.importorskip("typer")

    module = importlib.import_module("spanish_tutor.main")

    assert hasattr(module, "app")
    assert module.app is not None


def test_start_reports_relay_settings() -> None:
    typer_testing = pytest.importorskip("typer.testing")
    from spanish_tutor.main import app

    result = typer_testing.CliRunner().invoke(app, ["start"])

    assert result.exit_code == 0
    assert "api_base" in result.stdout
