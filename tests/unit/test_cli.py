"""Click commands."""

from __future__ import annotations

import json

import pytest
from click.testing import CliRunner

from billing_backoffice.cli import main


@pytest.fixture(autouse=True)
def _quiet_logging(monkeypatch):
    # keep the root logger off the runner's temporary stderr
    monkeypatch.setattr(
        "billing_backoffice.observability.logger.setup_logging", lambda *a, **k: None
    )


class TestNextNumber:
    def test_first_number(self):
        result = CliRunner().invoke(main, ["next-number", "[INV]-YYYY-###", "YYYY-###", "", "--date", "2024-06-01"])
        assert result.exit_code == 0, result.output
        assert result.output.strip() == "INV-2024-001"

    def test_increments_last(self):
        result = CliRunner().invoke(main, ["next-number", "[INV]-###", "", "INV-041"])
        assert result.exit_code == 0, result.output
        assert result.output.strip() == "INV-042"

    def test_invalid_increment(self):
        result = CliRunner().invoke(main, ["next-number", "[INV]-###", "YYY", "INV-041"])
        assert result.exit_code != 0
        assert "Increment schema is invalid" in result.output


class TestShowConfig:
    def test_reads_config_file(self, tmp_path):
        path = tmp_path / "billing.toml"
        path.write_text('[numbering]\ntenant_key = "acme"\n')

        result = CliRunner().invoke(main, ["show-config", "--config", str(path)])

        assert result.exit_code == 0, result.output
        assert json.loads(result.output)["numbering"]["tenant_key"] == "acme"


class TestInitDb:
    def test_requires_postgres(self):
        result = CliRunner().invoke(main, ["init-db"])
        assert result.exit_code != 0
        assert "storage.backend=postgres" in result.output


class TestDispatchJobs:
    def test_single_pass_on_memory_backends(self):
        result = CliRunner().invoke(main, ["dispatch-jobs"])
        assert result.exit_code == 0, result.output
        assert "dispatched=0 failed=0 handled=0" in result.output
