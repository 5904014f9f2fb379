"""Tests for CLI commands - watch and status."""

import json
import logging
from pathlib import Path

import pytest
from click.testing import CliRunner

from docsync.client.cli import cli
from docsync.client.lock import InstanceLock
from docsync.client.state import FileRecord, StateStore, UploadStatus
from docsync.core.config import WatchedRoot
from docsync.core.fingerprint import Fingerprint


@pytest.fixture
def runner() -> CliRunner:
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture(autouse=True)
def reset_logging():  # type: ignore[no-untyped-def]
    """Drop handlers installed by the watch command."""
    yield
    docsync_logger = logging.getLogger("docsync")
    for handler in docsync_logger.handlers[:]:
        docsync_logger.removeHandler(handler)
    docsync_logger.propagate = True
    docsync_logger.setLevel(logging.NOTSET)


@pytest.fixture
def inbox(tmp_path: Path) -> Path:
    path = tmp_path / "inbox"
    path.mkdir()
    return path


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    return tmp_path / "state"


@pytest.fixture
def config_file(tmp_path: Path, inbox: Path, state_dir: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Write a minimal agent config file."""
    monkeypatch.delenv("DOCSYNC_TOKEN", raising=False)
    config = tmp_path / "config.json"
    config.write_text(
        json.dumps(
            {
                "server": {"server_url": "http://test", "token": "token123"},
                "roots": [str(inbox)],
                "state_dir": str(state_dir),
            }
        )
    )
    return config


class TestWatchCommand:
    """Tests for 'docsync watch' command."""

    def test_missing_config(self, runner: CliRunner, tmp_path: Path) -> None:
        """A missing config file exits with the config error code."""
        result = runner.invoke(cli, ["watch", "--config", str(tmp_path / "nope.json")])
        assert result.exit_code == 2
        assert "not found" in result.output

    def test_invalid_config(self, runner: CliRunner, tmp_path: Path) -> None:
        config = tmp_path / "config.json"
        config.write_text(json.dumps({"roots": []}))

        result = runner.invoke(cli, ["watch", "--config", str(config)])
        assert result.exit_code == 2

    def test_already_running(
        self, runner: CliRunner, config_file: Path, inbox: Path, state_dir: Path
    ) -> None:
        """A second agent exits with code 3 and touches no state."""
        root = WatchedRoot(inbox)
        store = StateStore(state_dir)
        store.upsert(
            root,
            FileRecord("a.txt", Fingerprint(b"\x01" * 32), 1, 1.0, UploadStatus.pending()),
        )
        before = store.state_file(root).read_bytes()

        with InstanceLock.acquire(state_dir / "docsync.lock"):
            result = runner.invoke(cli, ["watch", "--once", "--config", str(config_file)])

        assert result.exit_code == 3
        assert "Another docsync agent is running" in result.output
        assert store.state_file(root).read_bytes() == before

    def test_corrupt_state(
        self, runner: CliRunner, config_file: Path, inbox: Path, state_dir: Path
    ) -> None:
        """An unreadable state file exits with code 4 and releases the lock."""
        state_dir.mkdir()
        state_file = StateStore(state_dir).state_file(WatchedRoot(inbox))
        state_file.write_text("{broken")

        result = runner.invoke(cli, ["watch", "--once", "--config", str(config_file)])

        assert result.exit_code == 4
        assert "Corrupt state file" in result.output
        assert state_file.read_text() == "{broken"
        InstanceLock.acquire(state_dir / "docsync.lock").release()

    def test_once_uploads_existing_files(
        self, runner: CliRunner, httpx_mock, config_file: Path, inbox: Path, state_dir: Path  # type: ignore[no-untyped-def]
    ) -> None:
        """--once delivers the files already present and exits."""
        (inbox / "a.txt").write_bytes(b"hello")
        httpx_mock.add_response(
            url="http://test/api/v1/upload", method="POST", status_code=201, json={"id": "r1"}
        )

        result = runner.invoke(cli, ["watch", "--once", "--config", str(config_file)])

        assert result.exit_code == 0, result.output
        assert "1 uploaded" in result.output
        record = StateStore(state_dir).load(WatchedRoot(inbox))["a.txt"]
        assert record.status.remote_id == "r1"

    def test_once_skips_uploaded_files(
        self, runner: CliRunner, httpx_mock, config_file: Path, inbox: Path  # type: ignore[no-untyped-def]
    ) -> None:
        """A second run finds nothing new to upload."""
        (inbox / "a.txt").write_bytes(b"hello")
        httpx_mock.add_response(
            url="http://test/api/v1/upload", method="POST", status_code=201, json={"id": "r1"}
        )

        runner.invoke(cli, ["watch", "--once", "--config", str(config_file)])
        result = runner.invoke(cli, ["watch", "--once", "--config", str(config_file)])

        assert result.exit_code == 0, result.output
        assert "0 uploaded" in result.output
        assert len(httpx_mock.get_requests()) == 1


class TestStatusCommand:
    """Tests for 'docsync status' command."""

    def test_status_counts_and_failures(
        self, runner: CliRunner, config_file: Path, inbox: Path, state_dir: Path
    ) -> None:
        root = WatchedRoot(inbox)
        store = StateStore(state_dir)
        store.upsert(
            root,
            FileRecord(
                "a.txt", Fingerprint(b"\x01" * 32), 1, 1.0, UploadStatus.uploaded("r1", 1.0, 1)
            ),
        )
        store.upsert(
            root,
            FileRecord(
                "b.txt",
                Fingerprint(b"\x02" * 32),
                1,
                1.0,
                UploadStatus.failed("permanent (HTTP 422): bad file", 1),
            ),
        )

        result = runner.invoke(cli, ["status", "--config", str(config_file)])

        assert result.exit_code == 0, result.output
        assert str(root.path) in result.output
        assert "uploaded: 1" in result.output
        assert "failed: 1" in result.output
        assert "b.txt: permanent (HTTP 422): bad file (no retry)" in result.output

    def test_status_empty(self, runner: CliRunner, config_file: Path) -> None:
        result = runner.invoke(cli, ["status", "--config", str(config_file)])

        assert result.exit_code == 0
        assert "pending: 0" in result.output

    def test_status_corrupt_state(
        self, runner: CliRunner, config_file: Path, inbox: Path, state_dir: Path
    ) -> None:
        state_dir.mkdir()
        StateStore(state_dir).state_file(WatchedRoot(inbox)).write_text("[]")

        result = runner.invoke(cli, ["status", "--config", str(config_file)])
        assert result.exit_code == 4
