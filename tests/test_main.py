"""Tests for busrelay.__main__ entrypoint functions."""

from __future__ import annotations

import asyncio
import sys
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from busrelay.__main__ import (
    EXIT_FAILURE,
    EXIT_INVALID_CONFIG,
    EXIT_OK,
    _run,
    _safe_message_filter,
    build_config,
    build_parser,
    cli_overrides,
    main,
    setup_logging,
)
from busrelay.core.errors import BusConnectionError, RelayConfigurationError
from tests.mocks import make_config

VALID_YAML = """\
source:
  bus: system
  service: org.example.Source
  object_path: /org/example/Source
target:
  bus: session
  name: org.example.Proxy
"""

# ---------------------------------------------------------------------------
# setup_logging
# ---------------------------------------------------------------------------


class TestSetupLogging:
    def test_removes_default_handler_and_adds_stderr(self):
        """setup_logging configures loguru with the correct level."""
        # Act
        with (
            patch("busrelay.__main__.logger") as mock_logger,
            patch("busrelay.__main__._intercept_logging") as mock_intercept,
            patch.dict("os.environ", {}, clear=True),
        ):
            setup_logging(verbose=False)

            # Assert
            mock_logger.remove.assert_called_once()
            mock_logger.add.assert_called_once()
            assert mock_logger.add.call_args[1]["level"] == "INFO"
            mock_intercept.assert_called_once_with("INFO")

    def test_verbose_sets_debug_level(self):
        # Act
        with patch("busrelay.__main__.logger") as mock_logger, patch("busrelay.__main__._intercept_logging"):
            setup_logging(verbose=True)

            # Assert
            assert mock_logger.add.call_args[1]["level"] == "DEBUG"

    def test_log_level_env(self):
        # Act
        with (
            patch("busrelay.__main__.logger") as mock_logger,
            patch("busrelay.__main__._intercept_logging"),
            patch.dict("os.environ", {"LOG_LEVEL": "warning"}),
        ):
            setup_logging()

            # Assert
            assert mock_logger.add.call_args[1]["level"] == "WARNING"

    def test_log_file_adds_second_sink(self, tmp_path):
        # Arrange
        log_file = str(tmp_path / "relay.log")

        # Act
        with patch("busrelay.__main__.logger") as mock_logger, patch("busrelay.__main__._intercept_logging"):
            setup_logging(log_file=log_file)

            # Assert
            assert mock_logger.add.call_count == 2
            assert mock_logger.add.call_args_list[1][0][0] == log_file

    def test_format_includes_time_and_level(self):
        # Act
        with patch("busrelay.__main__.logger") as mock_logger, patch("busrelay.__main__._intercept_logging"):
            setup_logging()

            # Assert
            fmt = mock_logger.add.call_args[1]["format"]
            assert "{time:" in fmt
            assert "{level:" in fmt
            assert "{message}" in fmt

    def test_safe_message_filter_escapes(self):
        # Arrange
        record = {"message": "a{sv} <node>"}

        # Act
        keep = _safe_message_filter(record)

        # Assert
        assert keep is True
        assert record["message"] == "a{{sv}} \\<node>"


# ---------------------------------------------------------------------------
# config assembly
# ---------------------------------------------------------------------------


class TestBuildConfig:
    def test_cli_overrides_only_given_flags(self):
        # Arrange
        args = build_parser().parse_args(["-n", "org.example.Cli", "--timeout-ms", "250"])

        # Act
        result = cli_overrides(args)

        # Assert
        assert result == {"source": {"service": "org.example.Cli"}, "call_timeout_ms": 250}

    def test_precedence_yaml_env_cli(self, tmp_path):
        # Arrange
        config_file = tmp_path / "busrelay.yaml"
        config_file.write_text(VALID_YAML)
        args = build_parser().parse_args(["--config", str(config_file), "--proxy-name", "org.example.FromCli"])
        env = {"BUSRELAY_SOURCE_SERVICE": "org.example.FromEnv", "BUSRELAY_PROXY_NAME": "org.example.FromEnvProxy"}

        # Act
        with patch("dotenv.load_dotenv"), patch.dict("os.environ", env):
            config = build_config(args)

        # Assert
        assert config.source_service == "org.example.FromEnv"
        assert config.source_object_path == "/org/example/Source"
        assert config.proxy_name == "org.example.FromCli"

    def test_invalid_yaml(self, tmp_path):
        # Arrange
        config_file = tmp_path / "busrelay.yaml"
        config_file.write_text("source: [oops\n")
        args = build_parser().parse_args(["--config", str(config_file)])

        # Act / Assert
        with patch("dotenv.load_dotenv"), pytest.raises(RelayConfigurationError) as exc_info:
            build_config(args)
        assert exc_info.value.code == "invalid_yaml"


# ---------------------------------------------------------------------------
# main()
# ---------------------------------------------------------------------------


class TestMain:
    def test_create_config_writes_template(self, tmp_path):
        # Arrange
        target = tmp_path / "new.yaml"

        # Act
        with patch("busrelay.__main__.setup_logging"), pytest.raises(SystemExit) as exc_info:
            main(["--create-config", str(target), "-n", "org.example.Seeded"])

        # Assert
        assert exc_info.value.code == EXIT_OK
        assert "service: org.example.Seeded" in target.read_text()

    def test_create_config_unwritable(self, tmp_path):
        # Act
        with patch("busrelay.__main__.setup_logging"), pytest.raises(SystemExit) as exc_info:
            main(["--create-config", str(tmp_path / "missing" / "dir" / "x.yaml")])

        # Assert
        assert exc_info.value.code == EXIT_FAILURE

    def test_show_config(self, tmp_path, capsys):
        # Arrange
        config_file = tmp_path / "busrelay.yaml"
        config_file.write_text(VALID_YAML)

        # Act
        with (
            patch("busrelay.__main__.setup_logging"),
            patch("dotenv.load_dotenv"),
            pytest.raises(SystemExit) as exc_info,
        ):
            main(["--config", str(config_file), "--show-config"])

        # Assert
        assert exc_info.value.code == EXIT_OK
        out = capsys.readouterr().out
        assert "org.example.Proxy" in out

    def test_invalid_config_exits_2(self, tmp_path):
        # Act
        with (
            patch("busrelay.__main__.setup_logging"),
            patch("dotenv.load_dotenv"),
            patch.dict("os.environ", {}, clear=True),
            pytest.raises(SystemExit) as exc_info,
        ):
            main(["--config", str(tmp_path / "absent.yaml")])

        # Assert
        assert exc_info.value.code == EXIT_INVALID_CONFIG

    def test_main_runs_relay_with_uvloop(self, tmp_path):
        # Arrange
        config_file = tmp_path / "busrelay.yaml"
        config_file.write_text(VALID_YAML)
        captured = []

        async def _capture_run(config):
            captured.append(config)
            return EXIT_OK

        loop = asyncio.new_event_loop()
        fake_uvloop = MagicMock()
        fake_uvloop.run.side_effect = lambda coro, **kw: loop.run_until_complete(coro)

        # Act
        try:
            with (
                patch.dict(sys.modules, {"uvloop": fake_uvloop}),
                patch("busrelay.__main__.setup_logging"),
                patch("dotenv.load_dotenv"),
                patch("busrelay.__main__._run", side_effect=_capture_run),
                pytest.raises(SystemExit) as exc_info,
            ):
                main(["--config", str(config_file)])
        finally:
            loop.close()

        # Assert
        assert exc_info.value.code == EXIT_OK
        assert captured[0].source_service == "org.example.Source"

    def test_main_falls_back_to_asyncio(self, tmp_path):
        # Arrange
        config_file = tmp_path / "busrelay.yaml"
        config_file.write_text(VALID_YAML)

        # Act
        with (
            patch.dict(sys.modules, {"uvloop": None}),
            patch("busrelay.__main__.setup_logging"),
            patch("dotenv.load_dotenv"),
            patch("busrelay.__main__._run", new=AsyncMock(return_value=EXIT_FAILURE)),
            pytest.raises(SystemExit) as exc_info,
        ):
            main(["--config", str(config_file)])

        # Assert
        assert exc_info.value.code == EXIT_FAILURE


# ---------------------------------------------------------------------------
# _run(): relay lifecycle
# ---------------------------------------------------------------------------


class TestRun:
    @pytest.mark.asyncio
    async def test_run_orderly(self):
        # Arrange
        relay = MagicMock()
        relay.run = AsyncMock()
        relay.stop = AsyncMock()

        # Act
        with patch("busrelay.__main__.Relay", return_value=relay):
            code = await _run(make_config())

        # Assert
        assert code == EXIT_OK
        relay.run.assert_awaited_once()
        relay.stop.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_run_fatal_error(self):
        # Arrange
        relay = MagicMock()
        relay.run = AsyncMock(side_effect=BusConnectionError("source bus unreachable", code="connect_failed"))
        relay.stop = AsyncMock()

        # Act
        with patch("busrelay.__main__.Relay", return_value=relay):
            code = await _run(make_config())

        # Assert
        assert code == EXIT_FAILURE
        relay.stop.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_signal_handlers_request_stop(self):
        # Arrange
        relay = MagicMock()
        relay.run = AsyncMock()
        relay.stop = AsyncMock()
        loop = asyncio.get_running_loop()

        # Act
        with (
            patch("busrelay.__main__.Relay", return_value=relay),
            patch.object(loop, "add_signal_handler") as mock_add,
            patch.object(loop, "remove_signal_handler") as mock_remove,
        ):
            await _run(make_config())

        # Assert
        assert mock_add.call_count == 2
        assert all(call[0][1] is relay.request_stop for call in mock_add.call_args_list)
        assert mock_remove.call_count == 2
