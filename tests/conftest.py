"""Pytest configuration and fixtures for the folder_mirror tests."""

import os
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import boto3
import pytest
from moto import mock_aws
from mypy_boto3_s3 import S3Client

import folder_mirror.config as config_module
import folder_mirror.services.ledger_service as ledger_module
import folder_mirror.services.log_service as log_module
from folder_mirror.config import Settings
from folder_mirror.services.log_service import LogService

TEST_BUCKET = "test-bucket"
TEST_REGION = "us-west-2"


@pytest.fixture(autouse=True)
def isolated_services(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> LogService:
    """Point the event log at a temp dir and reset module-level singletons."""
    for key in list(os.environ):
        if key.startswith(config_module.ENV_PREFIX):
            monkeypatch.delenv(key)
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", TEST_REGION)

    log_service = LogService(tmp_path / "logs")
    monkeypatch.setattr(log_module, "_log_service", log_service)
    monkeypatch.setattr(ledger_module, "_ledger", None)
    monkeypatch.setattr(config_module, "_settings", None)
    return log_service


@pytest.fixture
def source_dir(tmp_path: Path) -> Path:
    """Empty source folder to mirror."""
    path = tmp_path / "source"
    path.mkdir()
    return path


@pytest.fixture
def make_settings(tmp_path: Path, source_dir: Path) -> Callable[..., Settings]:
    """Build Settings for a test, without reading any real settings file."""

    def _make(**overrides: Any) -> Settings:
        settings = Settings(tmp_path / "missing-settings.json")
        values: dict[str, Any] = {
            "source_folder": str(source_dir),
            "target_bucket": TEST_BUCKET,
            "aws_region": TEST_REGION,
            "upload_threads": 2,
            "upload_log": str(tmp_path / "upload.log"),
            "log_directory": str(tmp_path / "logs"),
        }
        values.update(overrides)
        settings.override(values)
        return settings

    return _make


@pytest.fixture
def s3_client() -> Generator[S3Client, None, None]:
    """S3 client backed by moto, with the test bucket created."""
    with mock_aws():
        client = boto3.client("s3", region_name=TEST_REGION)
        client.create_bucket(
            Bucket=TEST_BUCKET,
            CreateBucketConfiguration={"LocationConstraint": TEST_REGION},
        )
        yield client


def write_file(path: Path, content: bytes, age_seconds: float | None = None) -> Path:
    """Write a file, optionally back-dating its mtime by age_seconds."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    if age_seconds is not None:
        stat = path.stat()
        new_mtime = stat.st_mtime - age_seconds
        os.utime(path, (new_mtime, new_mtime))
    return path


class FakeClock:
    """Manually advanced clock; sleep() advances it and records the call."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()
