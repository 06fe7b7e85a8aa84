"""Unit tests for the purgeman command line."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path
from unittest.mock import MagicMock, patch

import orjson
import pytest
from typer.testing import CliRunner

from purgeman.cli import app
from purgeman.config import Settings
from purgeman.errors import CatalogConnectionError

runner = CliRunner()

YAML_CONFIG = """
amqp_host: amqp.test
amqp_vhost: /irods
amqp_exchange: irods
amqp_username: purgeman
amqp_password: secret
irods_host: irods.test
irods_username: rods
irods_password: secret
irods_zone: tempZone
"""

ENV_WITHOUT_CREDENTIALS = {
    "PURGEMAN_AMQP_HOST": "amqp.test",
    "PURGEMAN_AMQP_VHOST": "/irods",
    "PURGEMAN_AMQP_EXCHANGE": "irods",
    "PURGEMAN_IRODS_HOST": "irods.test",
    "PURGEMAN_IRODS_ZONE": "tempZone",
}


@pytest.fixture(autouse=True)
def no_logging_setup() -> Iterator[None]:
    with patch("purgeman.cli.configure_logging"):
        yield


@pytest.fixture
def run_parent() -> Iterator[MagicMock]:
    with patch("purgeman.cli.run_parent") as mock_run:
        yield mock_run


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    path = tmp_path / "purgeman.yaml"
    path.write_text(YAML_CONFIG)
    return path


class TestVersion:
    """Test --version."""

    def test_version(self, run_parent: MagicMock) -> None:
        result = runner.invoke(app, ["--version"])

        assert result.exit_code == 0
        assert set(orjson.loads(result.stdout)) == {"version", "python", "platform"}
        run_parent.assert_not_called()


class TestRun:
    """Test running the service."""

    def test_config_file(self, run_parent: MagicMock, config_file: Path) -> None:
        result = runner.invoke(app, ["--config", str(config_file)])

        assert result.exit_code == 0
        settings: Settings = run_parent.call_args.args[0]
        assert settings.amqp_host == "amqp.test"
        assert settings.foreground is False

    def test_foreground_and_log(
        self, run_parent: MagicMock, config_file: Path, tmp_path: Path
    ) -> None:
        log_file = tmp_path / "purgeman.log"

        result = runner.invoke(
            app, ["--config", str(config_file), "-f", "--log", str(log_file)]
        )

        assert result.exit_code == 0
        settings: Settings = run_parent.call_args.args[0]
        assert settings.foreground is True
        assert settings.log_path == str(log_file)

    def test_config_from_stdin(self, run_parent: MagicMock) -> None:
        result = runner.invoke(app, ["--config", "-"], input=YAML_CONFIG)

        assert result.exit_code == 0
        assert run_parent.call_args.args[0].irods_zone == "tempZone"

    def test_stdin_config_without_credentials(self, run_parent: MagicMock) -> None:
        config = YAML_CONFIG.replace("amqp_password: secret\n", "")

        result = runner.invoke(app, ["--config", "-"], input=config)

        assert result.exit_code == 1
        assert "AMQP password is not set" in result.output
        run_parent.assert_not_called()

    def test_prompts_for_missing_credentials(
        self, run_parent: MagicMock, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        for key, value in ENV_WITHOUT_CREDENTIALS.items():
            monkeypatch.setenv(key, value)
        for key in (
            "PURGEMAN_AMQP_USERNAME",
            "PURGEMAN_AMQP_PASSWORD",
            "PURGEMAN_IRODS_USERNAME",
            "PURGEMAN_IRODS_PASSWORD",
        ):
            monkeypatch.delenv(key, raising=False)

        result = runner.invoke(app, [], input="amqp-user\namqp-pass\nrods\nrods-pass\n")

        assert result.exit_code == 0
        settings: Settings = run_parent.call_args.args[0]
        assert settings.amqp_username == "amqp-user"
        assert settings.amqp_password == "amqp-pass"
        assert settings.irods_username == "rods"
        assert settings.irods_password == "rods-pass"

    def test_missing_config_file(self, run_parent: MagicMock, tmp_path: Path) -> None:
        result = runner.invoke(app, ["--config", str(tmp_path / "missing.yaml")])

        assert result.exit_code == 1
        run_parent.assert_not_called()

    def test_startup_failure(self, run_parent: MagicMock, config_file: Path) -> None:
        run_parent.side_effect = CatalogConnectionError("iRODS irods.test:1247", "refused")

        result = runner.invoke(app, ["--config", str(config_file)])

        assert result.exit_code == 1
        assert "Could not connect to iRODS irods.test:1247" in result.output


class TestChildProcess:
    """Test the hidden --child-process flag."""

    def test_child_exit_status(self, run_parent: MagicMock) -> None:
        with patch("purgeman.cli.run_child", return_value=1) as mock_child:
            result = runner.invoke(app, ["--child-process"], input="")

        assert result.exit_code == 1
        mock_child.assert_called_once()
        run_parent.assert_not_called()

    def test_hidden_from_help(self) -> None:
        result = runner.invoke(app, ["--help"])

        assert result.exit_code == 0
        assert "--child-process" not in result.output
        assert "--foreground" in result.output
