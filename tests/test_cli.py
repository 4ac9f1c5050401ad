"""Tests for the command line entry point and supervisor factory."""

import json
from collections.abc import Callable
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from mypy_boto3_s3 import S3Client

from folder_mirror import create_supervisor
from folder_mirror.cli import _insert_default_command, build_parser, main, settings_from_args
from folder_mirror.config import ConfigError, Settings, get_settings
from folder_mirror.services.ledger_service import get_ledger
from folder_mirror.services.log_service import LogService
from folder_mirror.services.s3_service import FatalSetupError
from folder_mirror.services.upload_log_service import LedgerEntry, format_entry
from tests.conftest import TEST_BUCKET, FakeClock, write_file


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    return tmp_path / "missing-config.json"


class TestArguments:
    """Tests for argument parsing."""

    def test_default_command_inserted_after_global_options(self) -> None:
        argv = _insert_default_command(["--config", "c.json", "--source", "/data"])

        assert argv == ["--config", "c.json", "run", "--source", "/data"]

    def test_default_command_with_inline_global_options(self) -> None:
        """Test that --option=value global options are kept ahead of the command."""
        argv = _insert_default_command(["--config=c.json", "--log-level=DEBUG", "--threads", "2"])

        assert argv == ["--config=c.json", "--log-level=DEBUG", "run", "--threads", "2"]

    def test_command_name_as_option_value(self) -> None:
        """Test that an option value spelled like a command does not select it."""
        argv = _insert_default_command(["--source", "run", "--bucket", "events"])

        assert argv == ["run", "--source", "run", "--bucket", "events"]

    def test_explicit_command_and_help_untouched(self) -> None:
        assert _insert_default_command(["--config", "c.json", "events"]) == [
            "--config",
            "c.json",
            "events",
        ]
        assert _insert_default_command(["-h"]) == ["-h"]

    def test_inline_config_parses(self, config_file: Path) -> None:
        args = build_parser().parse_args(
            _insert_default_command([f"--config={config_file}", "--source", "run"])
        )

        assert args.command == "run"
        assert args.config == str(config_file)
        assert args.source_folder == "run"

    def test_overrides_mapped_to_settings(self, config_file: Path) -> None:
        """Test that command line options replace settings keys."""
        args = build_parser().parse_args(
            [
                "--config",
                str(config_file),
                "run",
                "--threads",
                "8",
                "--source",
                "/data",
                "--bucket",
                "archive",
                "--target",
                "backup/",
                "--in-memory",
                "--upload-log",
                "up.log",
                "--skip-uploaded",
                "up.log",
                "--folder-ready-marker-file",
                "READY",
            ]
        )

        settings = settings_from_args(args)

        assert settings.upload_threads == 8
        assert settings.source_folder == "/data"
        assert settings.target_bucket == "archive"
        assert settings.target_folder == "backup/"
        assert settings.in_memory is True
        assert settings.upload_log == "up.log"
        assert settings.skip_uploaded_log == "up.log"
        assert settings.folder_ready_marker_file == "READY"

    def test_unset_options_keep_file_values(self, tmp_path: Path) -> None:
        config = tmp_path / "config.json"
        config.write_text(json.dumps({"target_bucket": "from-file"}), encoding="utf-8")

        settings = settings_from_args(build_parser().parse_args(["--config", str(config), "run"]))

        assert settings.target_bucket == "from-file"
        assert settings.in_memory is False


class TestMain:
    """Tests for main() exit codes."""

    def test_missing_source_exits_with_error(self, config_file: Path) -> None:
        """Test that startup validation failures exit with status 1."""
        assert main(["--config", str(config_file), "--bucket", "b"]) == 1

    def test_invalid_thread_count_exits_with_error(self, config_file: Path, source_dir: Path) -> None:
        argv = ["--config", str(config_file), "--source", str(source_dir), "--bucket", "b"]

        assert main([*argv, "--threads", "0"]) == 1

    @patch("folder_mirror.cli.create_supervisor")
    def test_bounded_run_exits_cleanly(self, mock_create: MagicMock, config_file: Path) -> None:
        assert main(["--config", str(config_file), "run", "--max-cycles", "2"]) == 0

        mock_create.return_value.run.assert_called_once_with(max_cycles=2)
        assert get_settings() is mock_create.call_args.args[0]

    @patch("folder_mirror.cli.create_supervisor")
    def test_fatal_setup_error_exits_with_error(self, mock_create: MagicMock, config_file: Path) -> None:
        mock_create.return_value.run.side_effect = FatalSetupError("no credentials")

        assert main(["--config", str(config_file)]) == 1

    @patch("folder_mirror.cli.create_supervisor")
    def test_interrupt_exits_with_130(self, mock_create: MagicMock, config_file: Path) -> None:
        mock_create.return_value.run.side_effect = KeyboardInterrupt

        assert main(["--config", str(config_file)]) == 130

    def test_events_command_prints_json_lines(
        self,
        config_file: Path,
        isolated_services: LogService,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        isolated_services.info("upload", "file_uploaded", "Uploaded a")
        isolated_services.error("cycle", "cycle_failed", "Cycle failed")

        assert main(["--config", str(config_file), "events", "--category", "upload"]) == 0

        lines = [line for line in capsys.readouterr().out.splitlines() if line.startswith("{")]
        assert [json.loads(line)["event"] for line in lines] == ["file_uploaded"]


class TestCreateSupervisor:
    """Tests for the supervisor factory."""

    def test_validates_settings(self, make_settings: Callable[..., Settings]) -> None:
        with pytest.raises(ConfigError):
            create_supervisor(make_settings(target_bucket=""))

    def test_seeds_ledger_from_skip_log(
        self,
        source_dir: Path,
        make_settings: Callable[..., Settings],
        tmp_path: Path,
        isolated_services: LogService,
    ) -> None:
        seed = tmp_path / "previous.log"
        seed.write_text(format_entry(LedgerEntry(str(source_dir / "a"), "abc", 1, 2, 3)), encoding="utf-8")

        create_supervisor(make_settings(skip_uploaded_log=str(seed)))

        assert get_ledger().contains(str(source_dir / "a"))
        events = {e["event"] for e in isolated_services.read_log_entries()}
        assert {"upload_log_loaded", "app_started"} <= events

    def test_full_cycle(
        self,
        source_dir: Path,
        make_settings: Callable[..., Settings],
        s3_client: S3Client,
        fake_clock: FakeClock,
    ) -> None:
        """Test that a wired supervisor mirrors the folder and skips it on the next cycle."""
        write_file(source_dir / "a" / "one.txt", b"1")
        write_file(source_dir / "two.txt", b"22")
        supervisor = create_supervisor(
            make_settings(),
            client_factory=lambda: s3_client,
            clock=fake_clock,
            sleep=fake_clock.sleep,
        )

        totals = supervisor.run(max_cycles=2)

        keys = {o["Key"] for o in s3_client.list_objects_v2(Bucket=TEST_BUCKET)["Contents"]}
        assert keys == {"a/one.txt", "two.txt"}
        assert (totals.cycles, totals.uploaded, totals.skipped) == (2, 2, 2)
        assert fake_clock.sleeps == [3600]
