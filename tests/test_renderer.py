"""Test artifact writing: backups and atomic replacement."""

import datetime
import os
import stat

import pytest

from esc_deploy.files import atomic_write, backup_file, restore_file
from esc_deploy.renderer import ValidationState, render, write_artifact
from esc_deploy.templates import TemplateId


def backups(path):
    return sorted(path.parent.glob(f"{path.name}.backup.*"))


class TestWriteArtifact:
    def test_artifact_lands_under_host_root(self, host, scenario_config):
        artifact = render(TemplateId.ENV_FILE, scenario_config, host)

        assert artifact.path == host.root / "opt" / "apps" / "esc" / ".env.docker"
        assert artifact.mode == 0o600
        assert artifact.validation_state is ValidationState.UNVALIDATED

    def test_rerender_makes_exactly_one_backup(self, host, scenario_config):
        first = write_artifact(
            render(TemplateId.ENV_FILE, scenario_config, host, secret_key="old"), backup=True
        )
        former = first.path.read_bytes()
        assert first.backup_path is None

        second = write_artifact(
            render(TemplateId.ENV_FILE, scenario_config, host, secret_key="new"), backup=True
        )

        assert backups(second.path) == [second.backup_path]
        assert second.backup_path.read_bytes() == former
        assert "SECRET_KEY=new" in second.path.read_text()

    def test_script_is_executable(self, host, scenario_config):
        artifact = write_artifact(render(TemplateId.DEPLOY_SCRIPT, scenario_config, host))
        assert stat.S_IMODE(artifact.path.stat().st_mode) == 0o755


class TestBackupFile:
    def test_nothing_to_back_up(self, tmp_path):
        assert backup_file(tmp_path / "absent") is None

    def test_same_second_backups_do_not_collide(self, tmp_path):
        target = tmp_path / "jail.local"
        now = datetime.datetime(2024, 5, 1, 12, 0, 0)

        target.write_text("one")
        first = backup_file(target, now=now)
        target.write_text("two")
        second = backup_file(target, now=now)

        assert first.name == "jail.local.backup.20240501_120000"
        assert second.name == "jail.local.backup.20240501_120000-1"
        assert first.read_text() == "one"
        assert second.read_text() == "two"


class TestAtomicWrite:
    def test_failed_replace_keeps_old_content(self, tmp_path, monkeypatch):
        target = tmp_path / "sshd_config"
        target.write_text("Port 22\n")

        def broken_replace(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr(os, "replace", broken_replace)
        with pytest.raises(OSError):
            atomic_write(target, "Port 2222\n")

        assert target.read_text() == "Port 22\n"
        assert [p.name for p in tmp_path.iterdir()] == ["sshd_config"]

    def test_mode_applied(self, tmp_path):
        target = tmp_path / "secret"
        atomic_write(target, "x", mode=0o600)
        assert stat.S_IMODE(target.stat().st_mode) == 0o600

    def test_restore_is_byte_exact(self, tmp_path):
        original = tmp_path / "sshd_config"
        original.write_bytes(b"Port 22\r\n# odd bytes \xe2\x9c\x93\n")
        saved = backup_file(original)
        original.write_text("broken")

        restore_file(saved, original)

        assert original.read_bytes() == saved.read_bytes()
