"""
Integration tests for the command-line interface.

Tests cover:
- Creating capsules with messages, recipients and attachments
- show/list/shared output per viewer
- reveal, cancel, delete and audit commands
- download to disk
- Error exit codes and JSON error output
"""

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from timecapsule import __version__
from timecapsule.cli import app

runner = CliRunner()

FUTURE = "2099-01-01T00:00:00+00:00"


@pytest.fixture
def config_path(temp_dir: Path) -> Path:
    """Settings file pointing at a throwaway database and blob directory."""
    path = temp_dir / "settings.yaml"
    path.write_text(
        f"db_path: {temp_dir / 'capsules.db'}\n"
        f"blob_dir: {temp_dir / 'blobs'}\n"
        "log_level: WARNING\n"
    )
    return path


def invoke(config_path: Path, *args: str, user: str = "alice", email: str | None = None):
    """Run a command with --config and identity taken from the environment."""
    env = {"TIMECAPSULE_USER": user}
    if email:
        env["TIMECAPSULE_EMAIL"] = email
    return runner.invoke(app, [*args, "--config", str(config_path)], env=env)


def create_capsule(config_path: Path, *extra: str, title: str = "Letter") -> dict:
    result = invoke(config_path, "create", title, "--unlock-at", FUTURE, "-m", "Hello future", "--json", *extra)
    assert result.exit_code == 0, result.stdout
    return json.loads(result.stdout)


# =============================================================================
# Basics
# =============================================================================


class TestVersion:
    def test_version(self) -> None:
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout


class TestCreateCommand:
    """Tests for `timecapsule create`."""

    def test_create_human_output(self, config_path: Path) -> None:
        result = invoke(config_path, "create", "Letter", "--unlock-at", FUTURE, "-m", "Hi")
        assert result.exit_code == 0
        assert "Sealed capsule" in result.stdout

    def test_create_json(self, config_path: Path) -> None:
        data = create_capsule(config_path)
        assert data["title"] == "Letter"
        assert data["status"] == "scheduled"
        assert data["privacy"] == "private"
        assert data["visibility"] == "full"
        assert data["message"] == "Hello future"

    def test_create_with_recipients(self, config_path: Path) -> None:
        data = create_capsule(
            config_path,
            "--privacy", "recipients",
            "-r", "Bob@Example.com,carol@example.com",
            "-r", "dave@example.com",
        )
        assert data["recipients"] == ["bob@example.com", "carol@example.com", "dave@example.com"]

    def test_create_with_attachment(self, config_path: Path, temp_dir: Path) -> None:
        photo = temp_dir / "photo.png"
        photo.write_bytes(b"\x89PNG fake")
        data = create_capsule(config_path, "--attach", str(photo))
        assert data["attachment_count"] == 1
        assert data["attachments"][0]["filename"] == "photo.png"
        assert data["attachments"][0]["content_type"] == "image/png"

    def test_create_with_message_file(self, config_path: Path, temp_dir: Path) -> None:
        letter = temp_dir / "letter.txt"
        letter.write_text("Written in a file")
        result = invoke(
            config_path, "create", "From file", "--unlock-at", FUTURE, "--message-file", str(letter), "--json"
        )
        assert result.exit_code == 0
        assert json.loads(result.stdout)["message"] == "Written in a file"

    def test_message_file_not_utf8_fails(self, config_path: Path, temp_dir: Path) -> None:
        letter = temp_dir / "letter.txt"
        letter.write_bytes(b"\xff\xfe not text")
        result = invoke(
            config_path, "create", "Binary", "--unlock-at", FUTURE, "--message-file", str(letter), "--json"
        )
        assert result.exit_code == 1
        assert json.loads(result.stdout)["error_type"] == "file_error"

    def test_past_unlock_fails(self, config_path: Path) -> None:
        result = invoke(config_path, "create", "Late", "--unlock-at", "2000-01-01T00:00:00", "--json")
        assert result.exit_code == 1
        data = json.loads(result.stdout)
        assert data["error"] is True
        assert data["error_type"] == "UnlockTimeError"
        assert data["code"] == 1002

    def test_bad_timestamp_fails(self, config_path: Path) -> None:
        result = invoke(config_path, "create", "Bad", "--unlock-at", "next tuesday", "--json")
        assert result.exit_code == 1
        assert json.loads(result.stdout)["context"]["field"] == "unlock_at"

    def test_disallowed_attachment_fails(self, config_path: Path, temp_dir: Path) -> None:
        script = temp_dir / "run.sh"
        script.write_text("echo hi")
        result = invoke(config_path, "create", "Script", "--unlock-at", FUTURE, "--attach", str(script))
        assert result.exit_code == 1
        assert "E1003" in result.stdout


# =============================================================================
# Reading
# =============================================================================


class TestShowCommand:
    """Tests for `timecapsule show`."""

    def test_owner_show(self, config_path: Path) -> None:
        capsule = create_capsule(config_path)
        result = invoke(config_path, "show", capsule["id"])
        assert result.exit_code == 0
        assert "Hello future" in result.stdout

    def test_private_hidden_from_others(self, config_path: Path) -> None:
        capsule = create_capsule(config_path)
        result = invoke(config_path, "show", capsule["id"], "--json", user="bob")
        assert result.exit_code == 1
        data = json.loads(result.stdout)
        assert data["error_type"] == "CapsuleNotFoundError"

    def test_public_locked_for_others(self, config_path: Path) -> None:
        capsule = create_capsule(config_path, "--privacy", "public")
        result = invoke(config_path, "show", capsule["id"], "--json", user="bob")
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["visibility"] == "locked"
        assert data["message"] is None

    def test_locked_human_output(self, config_path: Path) -> None:
        capsule = create_capsule(config_path, "--privacy", "public")
        result = invoke(config_path, "show", capsule["id"], user="bob")
        assert result.exit_code == 0
        assert "locked" in result.stdout
        assert "Hello future" not in result.stdout


class TestListCommands:
    """Tests for `timecapsule list` and `timecapsule shared`."""

    def test_list_own(self, config_path: Path) -> None:
        first = create_capsule(config_path, title="First")
        second = create_capsule(config_path, title="Second")
        result = invoke(config_path, "list", "--json")
        assert result.exit_code == 0
        ids = [v["id"] for v in json.loads(result.stdout)]
        assert first["id"] in ids and second["id"] in ids

        result = invoke(config_path, "list", "--json", user="bob")
        assert json.loads(result.stdout) == []

    def test_list_empty_human(self, config_path: Path) -> None:
        result = invoke(config_path, "list", user="nobody")
        assert result.exit_code == 0
        assert "No capsules yet" in result.stdout

    def test_shared(self, config_path: Path) -> None:
        to_bob = create_capsule(config_path, "--privacy", "recipients", "-r", "bob@example.com")
        create_capsule(config_path, "--privacy", "recipients", "-r", "carol@example.com")
        create_capsule(config_path)

        result = invoke(config_path, "shared", "--json", user="bob", email="bob@example.com")
        assert result.exit_code == 0
        assert [v["id"] for v in json.loads(result.stdout)] == [to_bob["id"]]


# =============================================================================
# Lifecycle
# =============================================================================


class TestLifecycleCommands:
    """Tests for reveal, cancel, delete and audit."""

    def test_reveal_then_read(self, config_path: Path) -> None:
        capsule = create_capsule(config_path, "--privacy", "public")
        result = invoke(config_path, "reveal", capsule["id"], "--json")
        assert result.exit_code == 0
        assert json.loads(result.stdout)["status"] == "revealed"

        result = invoke(config_path, "show", capsule["id"], "--json", user="bob")
        assert json.loads(result.stdout)["message"] == "Hello future"

    def test_reveal_by_non_owner(self, config_path: Path) -> None:
        capsule = create_capsule(config_path, "--privacy", "public")
        result = invoke(config_path, "reveal", capsule["id"], "--json", user="bob")
        assert result.exit_code == 1
        assert json.loads(result.stdout)["code"] == 2001

    def test_cancel(self, config_path: Path) -> None:
        capsule = create_capsule(config_path, "--privacy", "public")
        result = invoke(config_path, "cancel", capsule["id"])
        assert result.exit_code == 0
        assert "cancelled" in result.stdout

        result = invoke(config_path, "reveal", capsule["id"], "--json")
        assert result.exit_code == 1
        assert json.loads(result.stdout)["error_type"] == "CapsuleStateError"

    def test_delete(self, config_path: Path) -> None:
        capsule = create_capsule(config_path)
        result = invoke(config_path, "delete", capsule["id"], "--yes")
        assert result.exit_code == 0
        result = invoke(config_path, "show", capsule["id"])
        assert result.exit_code == 1

    def test_delete_aborted_without_confirmation(self, config_path: Path) -> None:
        capsule = create_capsule(config_path)
        result = runner.invoke(
            app,
            ["delete", capsule["id"], "--config", str(config_path)],
            env={"TIMECAPSULE_USER": "alice"},
            input="n\n",
        )
        assert result.exit_code == 1
        assert invoke(config_path, "show", capsule["id"]).exit_code == 0

    def test_json_delete_requires_yes(self, config_path: Path) -> None:
        capsule = create_capsule(config_path)
        result = invoke(config_path, "delete", capsule["id"], "--json")
        assert result.exit_code == 1
        assert json.loads(result.stdout)["error_type"] == "usage_error"
        assert invoke(config_path, "show", capsule["id"]).exit_code == 0

    def test_delete_by_non_owner(self, config_path: Path) -> None:
        capsule = create_capsule(config_path)
        result = invoke(config_path, "delete", capsule["id"], "--yes", "--json", user="bob")
        assert result.exit_code == 1
        assert json.loads(result.stdout)["error_type"] == "PermissionDeniedError"

    def test_audit(self, config_path: Path) -> None:
        capsule = create_capsule(config_path)
        invoke(config_path, "cancel", capsule["id"])
        result = invoke(config_path, "audit", capsule["id"], "--json")
        assert result.exit_code == 0
        assert [e["action"] for e in json.loads(result.stdout)] == ["created", "cancelled"]


# =============================================================================
# Download
# =============================================================================


class TestDownloadCommand:
    """Tests for `timecapsule download`."""

    def _create_with_photo(self, config_path: Path, temp_dir: Path) -> tuple[str, str]:
        photo = temp_dir / "photo.png"
        photo.write_bytes(b"\x89PNG fake")
        capsule = create_capsule(config_path, "--privacy", "public", "--attach", str(photo))
        return capsule["id"], capsule["attachments"][0]["id"]

    def test_owner_download(self, config_path: Path, temp_dir: Path) -> None:
        _, attachment_id = self._create_with_photo(config_path, temp_dir)
        out = temp_dir / "copy.png"
        result = invoke(config_path, "download", attachment_id, "--out", str(out))
        assert result.exit_code == 0
        assert out.read_bytes() == b"\x89PNG fake"

    def test_locked_download(self, config_path: Path, temp_dir: Path) -> None:
        _, attachment_id = self._create_with_photo(config_path, temp_dir)
        out = temp_dir / "copy.png"
        result = invoke(config_path, "download", attachment_id, "--out", str(out), "--json", user="bob")
        assert result.exit_code == 1
        assert json.loads(result.stdout)["error_type"] == "LockedError"
        assert not out.exists()
