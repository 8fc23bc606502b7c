"""Tests for the desired-state store."""

import json
import tempfile
from pathlib import Path

import pytest

from modsync.errors import ProtectedBundleError, StateError
from modsync.state.models import BundleEntry, InstallPath
from modsync.state.store import DesiredStateStore
from modsync.sync.exclusions import DEFAULT_EXCLUSIONS


def _bundle(name: str, **overrides) -> BundleEntry:
    return BundleEntry(
        name=name,
        url=f"https://mods.example.com/{name}.zip",
        install_paths=[InstallPath("Plugins", "<ROOT>/Plugins")],
        protected=overrides.get("protected", False),
    )


def test_new_store_creates_live_but_no_staged_file():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = DesiredStateStore(Path(tmpdir) / "data")
        assert store.live_path.exists()
        assert store.pending_path.exists()
        assert not store.has_staged_file()
        assert not store.has_pending_changes()


def test_edits_persist_immediately():
    with tempfile.TemporaryDirectory() as tmpdir:
        data = Path(tmpdir) / "data"
        store = DesiredStateStore(data)
        store.upsert_bundle(_bundle("ModA"))
        assert store.has_staged_file()
        assert store.has_pending_changes()

        reloaded = DesiredStateStore(data)
        assert [b.name for b in reloaded.staged.bundles] == ["ModA"]
        assert reloaded.live.bundles == []
        assert [b.name for b in reloaded.diff().to_install] == ["ModA"]


def test_upsert_replaces_by_url():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = DesiredStateStore(Path(tmpdir))
        store.upsert_bundle(_bundle("ModA"))
        renamed = _bundle("ModA")
        renamed.name = "Mod A"
        store.upsert_bundle(renamed)
        assert [b.name for b in store.staged.bundles] == ["Mod A"]


def test_upsert_cannot_grant_protection():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = DesiredStateStore(Path(tmpdir))
        entry = store.upsert_bundle(_bundle("Sneaky", protected=True))
        assert not entry.protected


def test_remove_unknown_bundle_raises():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = DesiredStateStore(Path(tmpdir))
        with pytest.raises(StateError):
            store.remove_bundle("https://nowhere/x.zip")


def test_apply_staged_to_live_deletes_staged_file():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = DesiredStateStore(Path(tmpdir))
        store.upsert_bundle(_bundle("ModA"))
        store.upsert_bundle(_bundle("ModB"))
        store.apply_staged_to_live()

        assert not store.has_staged_file()
        assert store.live.urls() == store.staged.urls()
        assert not store.has_pending_changes()
        # In-memory Staged stays usable for further edits.
        store.remove_bundle(_bundle("ModA").url)
        assert [b.name for b in store.diff().to_remove] == ["ModA"]


def test_exclusion_only_edit_counts_as_pending():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = DesiredStateStore(Path(tmpdir))
        store.set_exclusions(["Plugins/ModA/config/**", " ", "Plugins/ModA/config/**"])
        assert not store.diff().has_changes
        assert store.has_pending_changes()
        assert store.staged.sync_exclusions == ["Plugins/ModA/config/**"]


def test_effective_exclusions_include_defaults():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = DesiredStateStore(Path(tmpdir))
        store.set_exclusions(["Mods/private/**"])
        store.apply_staged_to_live()
        effective = store.effective_exclusions()
        assert effective[: len(DEFAULT_EXCLUSIONS)] == DEFAULT_EXCLUSIONS
        assert effective[-1] == "Mods/private/**"

        store.set_exclusions(["Mods/private/**"], use_defaults=False)
        store.apply_staged_to_live()
        assert store.effective_exclusions() == ["Mods/private/**"]


def test_malformed_document_is_replaced_with_default():
    with tempfile.TemporaryDirectory() as tmpdir:
        data = Path(tmpdir)
        (data / "live.json").write_text("{ not json")
        (data / "pending_operations.json").write_text("[1, 2, 3]")
        store = DesiredStateStore(data)
        assert store.live.bundles == []
        assert store.pending.is_empty
        assert json.loads((data / "live.json").read_text())["bundles"] == []


def test_discard_staged_returns_never_installed_urls():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = DesiredStateStore(Path(tmpdir))
        store.upsert_bundle(_bundle("Installed"))
        store.apply_staged_to_live()
        store.upsert_bundle(_bundle("New"))
        store.remove_bundle(_bundle("Installed").url)

        discarded = store.discard_staged()
        assert discarded == [_bundle("New").url]
        assert not store.has_staged_file()
        assert store.staged.urls() == [_bundle("Installed").url]


# --- Protected bundles ---


def test_protected_bundle_cannot_be_edited_or_removed():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = DesiredStateStore(Path(tmpdir))
        store.repair_protected([_bundle("Core")])
        with pytest.raises(ProtectedBundleError):
            store.remove_bundle(_bundle("Core").url)
        with pytest.raises(ProtectedBundleError):
            store.upsert_bundle(_bundle("Core"))


def test_repair_protected_restores_missing_entries():
    with tempfile.TemporaryDirectory() as tmpdir:
        data = Path(tmpdir)
        store = DesiredStateStore(data)
        assert store.repair_protected([_bundle("Core")]) == ["Core"]
        assert store.live.find(_bundle("Core").url).protected
        assert store.staged.find(_bundle("Core").url).protected

        # Already present: nothing to repair.
        reloaded = DesiredStateStore(data)
        assert reloaded.repair_protected([_bundle("Core")]) == []


# --- Completion marker ---


def test_absorb_marker_installs_from_staged():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = DesiredStateStore(Path(tmpdir))
        store.upsert_bundle(_bundle("ModA"))
        store.set_deferred_installs([_bundle("ModA").url])
        store.save_pending()
        store.marker_path.write_text(json.dumps({"installed": [_bundle("ModA").url], "removed": []}))

        cleared = []
        marker = store.absorb_completion_marker(cleared.append)

        assert marker.installed == [_bundle("ModA").url]
        entry = store.live.find(_bundle("ModA").url)
        assert entry is not None and entry.last_updated
        assert cleared == [_bundle("ModA").url]
        assert store.pending.deferred_installs == []
        assert not store.marker_path.exists()
        assert not store.has_staged_file()


def test_absorb_marker_removes_live_entry_and_deletions():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = DesiredStateStore(Path(tmpdir))
        url = _bundle("ModB").url
        store.upsert_bundle(_bundle("ModB"))
        store.apply_staged_to_live()
        store.remove_bundle(url)
        store.queue_removal(url, ["<ROOT>/Plugins/ModB"])
        store.save_pending()
        store.marker_path.write_text(json.dumps({"installed": [], "removed": [url]}))

        store.absorb_completion_marker()

        assert store.live.find(url) is None
        assert store.pending.is_empty
        assert not store.has_staged_file()


def test_absorb_marker_ignores_unknown_urls():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = DesiredStateStore(Path(tmpdir))
        store.marker_path.write_text(json.dumps(["https://unknown/x.zip"]))
        marker = store.absorb_completion_marker()
        assert marker.installed == ["https://unknown/x.zip"]
        assert store.live.bundles == []
        assert not store.marker_path.exists()


def test_queue_removal_deduplicates_paths():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = DesiredStateStore(Path(tmpdir))
        url = _bundle("ModA").url
        assert len(store.queue_removal(url, ["<ROOT>/Plugins/ModA"])) == 1
        assert store.queue_removal(url, ["<ROOT>/Plugins/ModA"]) == []
        assert store.pending.pending_removals == [url]
