"""Tests for the sync client against a live authority app."""

import tempfile
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from modsync.authority import Authority
from modsync.client.sync_client import ClientSettings, SyncClient
from modsync.config import Settings
from modsync.errors import ManifestFetchError
from modsync.state.models import BundleEntry, InstallPath
from modsync.sync.drift import SyncAction
from web.backend.app.main import create_app


def _authority_root(base: Path) -> Path:
    """An authority root with one bundle already installed and Live."""
    root = base / "authority"
    (root / "Plugins/ModA").mkdir(parents=True)
    (root / "Plugins/ModA/a.dll").write_bytes(b"A" * 120)
    (root / "Mods/ModA").mkdir(parents=True)
    (root / "Mods/ModA/mod.json").write_text('{"name": "ModA"}')
    return root


def _sync_client(base: Path) -> tuple[SyncClient, Path]:
    root = _authority_root(base)
    authority = Authority(Settings(root=str(root)), launcher=lambda command: None)
    authority.store.live.bundles = [
        BundleEntry(
            "ModA",
            "u1",
            install_paths=[
                InstallPath("Plugins/ModA", "<ROOT>/Plugins/ModA"),
                InstallPath("Mods/ModA", "<ROOT>/Mods/ModA"),
            ],
        )
    ]
    authority.store.save_live()

    local = base / "local"
    local.mkdir()
    settings = ClientSettings(root=str(local))
    return SyncClient(settings, client=TestClient(create_app(authority))), local


def test_fresh_installation_downloads_everything():
    with tempfile.TemporaryDirectory() as tmpdir:
        client, local = _sync_client(Path(tmpdir))

        report = client.check()
        assert sorted(i.relative_path for i in report.missing) == [
            "Mods/ModA/mod.json",
            "Plugins/ModA/a.dll",
        ]
        assert len(report.blocking_issues) == 2

        result = client.repair(report)
        assert result.success
        assert sorted(result.downloaded) == ["Mods/ModA/mod.json", "Plugins/ModA/a.dll"]
        assert (local / "Plugins/ModA/a.dll").read_bytes() == b"A" * 120
        assert not client.check().has_drift


def test_modified_file_is_replaced():
    with tempfile.TemporaryDirectory() as tmpdir:
        client, local = _sync_client(Path(tmpdir))
        client.repair(client.check())
        (local / "Plugins/ModA/a.dll").write_bytes(b"tampered")

        report = client.check()
        assert [(i.action, i.relative_path) for i in report.issues] == [
            (SyncAction.UPDATE, "Plugins/ModA/a.dll")
        ]
        client.repair(report)
        assert (local / "Plugins/ModA/a.dll").read_bytes() == b"A" * 120
        assert not list((local / "Plugins/ModA").glob(".a.dll.*"))


def test_extra_files_deleted_only_on_request():
    with tempfile.TemporaryDirectory() as tmpdir:
        client, local = _sync_client(Path(tmpdir))
        client.repair(client.check())
        stray = local / "Plugins/stray.dll"
        stray.write_bytes(b"S")
        kept_log = local / "Plugins/ModA/debug.log"
        kept_log.write_text("excluded")

        report = client.check()
        assert [i.relative_path for i in report.extra] == ["Plugins/stray.dll"]
        assert not report.blocking_issues

        client.repair(report)
        assert stray.exists()

        result = client.repair(report, delete_extra=True)
        assert result.deleted == ["Plugins/stray.dll"]
        assert not stray.exists()
        assert kept_log.exists()


def test_fetch_config_returns_live_bundles():
    with tempfile.TemporaryDirectory() as tmpdir:
        client, _ = _sync_client(Path(tmpdir))
        config = client.fetch_config()
        assert [b.name for b in config.bundles] == ["ModA"]
        assert config.bundles[0].install_paths[0] == InstallPath("Plugins/ModA", "<ROOT>/Plugins/ModA")


def test_unreachable_authority_raises():
    settings = ClientSettings(server_url="http://127.0.0.1:9", timeout=0.5)
    client = SyncClient(settings)
    try:
        with pytest.raises(ManifestFetchError):
            client.fetch_manifest()
    finally:
        client.close()


def test_client_settings_from_yaml():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "modsync-client.yml"
        assert ClientSettings.from_yaml(path).server_url == "http://127.0.0.1:6969"

        path.write_text("server_url: http://authority:6969\nroot: /srv/game\nsync_roots: [Plugins]\n")
        settings = ClientSettings.from_yaml(path)
        assert settings.server_url == "http://authority:6969"
        assert settings.sync_roots == ["Plugins"]

        path.write_text("- not\n- a mapping\n")
        with pytest.raises(ManifestFetchError):
            ClientSettings.from_yaml(path)
