"""Tests for the reconciler and the authority startup sequence."""

import errno
import io
import shutil
import tempfile
import zipfile
from pathlib import Path

import httpx

from modsync.authority import Authority
from modsync.config import Settings
from modsync.state.models import BundleEntry, CopyRuleState, FileCopyRule, InstallPath
from modsync.sync.copying import is_locked_error
from modsync.sync.deferred import ApplyPhase, DeferredApplier

U1 = "https://mods.example.com/moda.zip"
U2 = "https://mods.example.com/modb.zip"


def _zip_bytes(files: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, content in files.items():
            archive.writestr(name, content)
    return buffer.getvalue()


ROUTES = {
    U1: _zip_bytes({"Plugins/ModA/a.dll": b"A" * 120, "Plugins/ModA/config.json": b"{}"}),
    U2: _zip_bytes({"Plugins/ModB/b.dll": b"B" * 64}),
}


def _authority(root: Path, launches: list, routes=None, is_locked=None, **settings) -> Authority:
    routes = ROUTES if routes is None else routes

    def handler(request: httpx.Request) -> httpx.Response:
        payload = routes.get(str(request.url))
        if payload is None:
            return httpx.Response(404)
        return httpx.Response(200, content=payload)

    return Authority(
        Settings(root=str(root), **settings),
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
        launcher=launches.append,
        is_locked=is_locked or (lambda path: False),
    )


def _mod(name: str, url: str, **overrides) -> BundleEntry:
    return BundleEntry(
        name=name,
        url=url,
        install_paths=[InstallPath("Plugins", "<ROOT>/Plugins")],
        file_rules=overrides.get("file_rules", []),
    )


def _run_script(authority: Authority) -> None:
    """Play the deferred script against an authority that has just stopped."""
    probes = iter([True, False])
    applier = DeferredApplier(authority.reconciler.build_plan(), probe=lambda: next(probes), sleep=lambda s: None)
    applier.run()
    assert applier.phase == ApplyPhase.MARKER_WRITTEN


def test_fresh_install_goes_live_and_clears_cache():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        launches = []
        authority = _authority(root, launches)
        authority.store.upsert_bundle(_mod("ModA", U1))
        assert [b.name for b in authority.store.diff().to_install] == ["ModA"]

        result = authority.apply()

        assert result.success
        assert result.installed == ["ModA"]
        assert not result.requires_restart
        assert (root / "Plugins/ModA/a.dll").read_bytes() == b"A" * 120
        live_entry = authority.store.live.find(U1)
        assert live_entry is not None and live_entry.last_updated
        assert not authority.stager.is_staged(U1)
        assert not authority.store.has_pending_changes()
        assert launches == []


def test_ignore_rules_skip_files():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        authority = _authority(root, [])
        rule = FileCopyRule("plugins/moda/CONFIG.json", CopyRuleState.IGNORE)
        authority.store.upsert_bundle(_mod("ModA", U1, file_rules=[rule]))
        authority.apply()

        assert (root / "Plugins/ModA/a.dll").exists()
        assert not (root / "Plugins/ModA/config.json").exists()


def test_locked_bundle_is_deferred_to_script():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        launches = []
        authority = _authority(root, launches, is_locked=lambda path: path.name == "a.dll")
        authority.store.upsert_bundle(_mod("ModA", U1))

        result = authority.apply()

        assert result.success
        assert result.queued_for_install == ["ModA"]
        assert result.requires_restart and result.installer_launched
        # Never a partial install.
        assert not (root / "Plugins/ModA/config.json").exists()
        assert authority.store.live.find(U1) is None
        assert authority.store.pending.deferred_installs == [U1]
        assert authority.stager.is_staged(U1)
        assert authority.store.has_pending_changes()
        script = Path(result.script_path)
        assert script.exists()
        assert launches == [[launches[0][0], str(script)]]
        assert authority.phase == ApplyPhase.LAUNCHED


def test_deferred_install_completes_after_restart():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        authority = _authority(root, [], is_locked=lambda path: True)
        authority.store.upsert_bundle(_mod("ModA", U1))
        authority.apply()
        _run_script(authority)
        assert (root / "Plugins/ModA/a.dll").exists()

        restarted = _authority(root, [])
        report = restarted.startup()

        assert report.absorbed.installed == [U1]
        assert restarted.store.live.find(U1).last_updated
        assert not restarted.stager.is_staged(U1)
        assert not restarted.store.has_pending_changes()
        assert not restarted.script.exists()
        assert restarted.phase == ApplyPhase.IDLE


def test_lock_detected_mid_copy_defers_bundle():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)

        def copier(source, destination):
            raise PermissionError(errno.EACCES, "in use", str(destination))

        authority = _authority(root, [])
        authority.reconciler.file_copier = copier
        authority.store.upsert_bundle(_mod("ModA", U1))

        result = authority.apply()
        assert result.queued_for_install == ["ModA"]
        assert result.errors == []


def test_removal_is_queued_while_files_are_locked():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        launches = []
        authority = _authority(root, launches)
        authority.store.upsert_bundle(_mod("ModA", U1))
        authority.apply()

        # a.dll is held open from here on.
        authority.reconciler.is_locked = lambda path: True
        authority.store.remove_bundle(U1)
        result = authority.apply()

        assert result.queued_for_removal == ["ModA"]
        deletions = authority.store.pending.pending_deletions
        assert [d.path for d in deletions] == ["<ROOT>/Plugins/ModA"]
        assert authority.store.live.find(U1) is not None
        assert (root / "Plugins/ModA/a.dll").exists()
        assert result.requires_restart and len(launches) == 1


def test_removal_completes_after_restart():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        authority = _authority(root, [])
        authority.store.upsert_bundle(_mod("ModA", U1))
        authority.apply()
        authority.store.remove_bundle(U1)
        authority.apply()
        _run_script(authority)

        assert not (root / "Plugins/ModA").exists()
        restarted = _authority(root, [])
        report = restarted.startup()
        assert report.absorbed.removed == [U1]
        assert restarted.store.live.bundles == []
        assert restarted.store.pending.is_empty
        assert not restarted.store.has_pending_changes()


def test_removal_folder_found_by_case_insensitive_substring():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        (root / "Mods/author-moda-1.2").mkdir(parents=True)
        (root / "Plugins/ModA").mkdir(parents=True)
        authority = _authority(root, [])
        entry = _mod("ModA", U1)
        entry.install_paths.append(InstallPath("Mods", "<ROOT>/Mods"))
        assert authority.reconciler.locate_install_folders(entry) == [
            "Plugins/ModA",
            "Mods/author-moda-1.2",
        ]


def test_removal_folder_picks_one_match_per_root():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        for folder in ("Mods/ExtraLib", "Mods/Lib-v2", "Plugins/Lib"):
            (root / folder).mkdir(parents=True)
        authority = _authority(root, [])
        entry = BundleEntry(name="Lib", url=U1, install_paths=[InstallPath("Mods", "<ROOT>/Mods")])

        assert authority.reconciler.locate_install_folders(entry) == ["Mods/Lib-v2"]

        (root / "Mods/lib").mkdir()
        assert authority.reconciler.locate_install_folders(entry) == ["Mods/lib"]


def test_edit_during_apply_stays_staged():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        holder = {}

        def handler(request: httpx.Request) -> httpx.Response:
            if str(request.url) == U1 and "edited" not in holder:
                holder["edited"] = True
                holder["authority"].store.upsert_bundle(_mod("ModB", U2))
            return httpx.Response(200, content=ROUTES[str(request.url)])

        authority = Authority(
            Settings(root=str(root)),
            http_client=httpx.Client(transport=httpx.MockTransport(handler)),
            launcher=[].append,
            is_locked=lambda path: False,
        )
        holder["authority"] = authority
        authority.store.upsert_bundle(_mod("ModA", U1))

        result = authority.apply()

        store = authority.store
        assert result.installed == ["ModA"]
        assert store.live.urls() == [U1]
        assert store.live.find(U1).last_updated
        assert store.has_staged_file()
        assert store.has_pending_changes()
        assert [b.name for b in store.diff().to_install] == ["ModB"]
        assert not (root / "Plugins/ModB").exists()

        result = authority.apply()
        assert result.installed == ["ModB"]
        assert store.live.urls() == [U1, U2]
        assert not store.has_pending_changes()


def test_failed_copy_removes_files_it_created():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        copied = []

        def copier(source, destination):
            if copied:
                raise OSError(errno.ENOSPC, "No space left on device", str(destination))
            shutil.copy2(source, destination)
            copied.append(destination)

        authority = _authority(root, [])
        authority.reconciler.file_copier = copier
        authority.store.upsert_bundle(_mod("ModA", U1))

        result = authority.apply()

        assert result.queued_for_install == []
        assert len(result.errors) == 1
        assert "stopped after 1 of 2 files" in result.errors[0]
        assert "1 new files removed" in result.errors[0]
        assert len(copied) == 1 and not copied[0].exists()
        assert authority.store.live.bundles == []
        assert authority.store.has_pending_changes()


def test_one_failing_bundle_does_not_block_others():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        authority = _authority(root, [], routes={U2: ROUTES[U2]})
        authority.store.upsert_bundle(_mod("ModA", U1))
        authority.store.upsert_bundle(_mod("ModB", U2))

        result = authority.apply()

        assert not result.success
        assert result.installed == ["ModB"]
        assert len(result.errors) == 1 and result.errors[0].startswith("ModA")
        assert authority.store.live.urls() == [U2]
        assert authority.store.has_staged_file()
        assert [b.name for b in authority.store.diff().to_install] == ["ModA"]


def test_missing_install_source_fails_the_bundle():
    with tempfile.TemporaryDirectory() as tmpdir:
        authority = _authority(Path(tmpdir), [])
        entry = _mod("ModA", U1)
        entry.install_paths = [InstallPath("BepInEx", "<ROOT>/BepInEx")]
        authority.store.upsert_bundle(entry)

        result = authority.apply()
        assert not result.success
        assert authority.store.live.bundles == []


def test_later_bundle_wins_contested_file():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        routes = {
            U1: _zip_bytes({"Plugins/shared.dll": b"first"}),
            U2: _zip_bytes({"Plugins/shared.dll": b"second"}),
        }
        authority = _authority(root, [], routes=routes)
        authority.store.upsert_bundle(_mod("ModA", U1))
        authority.store.upsert_bundle(_mod("ModB", U2))
        authority.apply()
        assert (root / "Plugins/shared.dll").read_bytes() == b"second"


def test_startup_replays_pending_deletions():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        authority = _authority(root, [])
        authority.store.upsert_bundle(_mod("ModA", U1))
        authority.apply()
        authority.store.remove_bundle(U1)
        authority.apply()
        # The script never ran (crash before the marker).

        restarted = _authority(root, [])
        report = restarted.startup()

        assert report.absorbed is None
        assert report.completed_removals == [U1]
        assert not (root / "Plugins/ModA").exists()
        assert restarted.store.live.bundles == []
        assert not restarted.script.exists()


def test_startup_repairs_protected_bundles():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        protected = root / "protected.yml"
        protected.write_text(
            "bundles:\n"
            "  - name: ModSync\n"
            f"    url: {U2}\n"
            "    installPaths: [[Plugins, <ROOT>/Plugins]]\n"
        )
        authority = _authority(root, [], protected_file=str(protected))
        report = authority.startup()

        assert report.repaired == ["ModSync"]
        assert authority.store.live.find(U2).protected


def test_malformed_protected_file_does_not_block_startup():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        protected = root / "protected.yml"
        protected.write_text("bundles: [name: ModSync\n  url: {broken\n")
        authority = _authority(root, [], protected_file=str(protected))

        report = authority.startup()

        assert report.repaired == []
        assert authority.store.live.bundles == []


def test_bad_protected_entries_are_skipped():
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        protected = root / "protected.yml"
        protected.write_text(
            "- just a string\n"
            "- name: NoPaths\n"
            "  url: https://mods.example.com/nopaths.zip\n"
            "  installPaths: [[only-one-element]]\n"
            "- name: ModSync\n"
            f"  url: {U2}\n"
            "  installPaths: [[Plugins, <ROOT>/Plugins]]\n"
        )
        authority = _authority(root, [], protected_file=str(protected))

        assert [b.name for b in authority.load_protected_bundles()] == ["ModSync"]
        assert authority.startup().repaired == ["ModSync"]


def test_locked_error_heuristics():
    assert is_locked_error(PermissionError(errno.EACCES, "denied"))
    assert is_locked_error(OSError(errno.EBUSY, "busy"))
    assert is_locked_error(OSError("The process cannot access the file because it is being used by another process"))
    assert not is_locked_error(FileNotFoundError(errno.ENOENT, "missing"))
