"""Content-addressable staging cache for downloaded bundles.

Each bundle URL maps to ``<staging>/<key>/`` where ``<key>`` is a short,
filesystem-safe hash of the URL. The directory holds the downloaded archive
(``bundle.<ext>``) and its extracted tree (``extracted/``). A URL counts as
staged only when it is in the index AND its directory still exists.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import shutil
import tarfile
import time
import zipfile
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from urllib.parse import unquote, urlparse

import httpx

from modsync.errors import StagingError
from modsync.observability import elapsed_ms, log_event
from modsync.state.documents import load_document, write_json_atomic
from modsync.state.models import InstallPath, StagingIndex
from modsync.utils.paths import ROOT_PLACEHOLDER

log = logging.getLogger("modsync.staging")

_ARCHIVE_SUFFIXES = (".tar.gz", ".tar.bz2", ".tar.xz", ".tgz", ".zip", ".tar")


def staging_key(url: str) -> str:
    """Deterministic, filesystem-safe 16-character key for *url*."""
    digest = hashlib.sha256(url.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii")[:16]


@dataclass
class StagedBundleInfo:
    """Structure of an extracted bundle, used to suggest install mappings."""

    url: str
    extracted_path: str
    directories: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)
    suggested_install_paths: list[InstallPath] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "extractedPath": self.extracted_path,
            "directories": list(self.directories),
            "files": list(self.files),
            "suggestedInstallPaths": [p.to_list() for p in self.suggested_install_paths],
        }


class ContentStager:
    """Downloads and extracts bundles into a URL-keyed cache.

    ``ensure_staged`` is idempotent: once a URL is staged, further calls return
    the cached path without touching the network.
    """

    INDEX_FILE = "staging_index.json"

    def __init__(
        self,
        data_dir: str | Path,
        client: httpx.Client | None = None,
        timeout: float = 1800.0,
        verify: bool = True,
    ):
        self.data_dir = Path(data_dir)
        self.staging_dir = self.data_dir / "staging"
        self.staging_dir.mkdir(parents=True, exist_ok=True)
        self.index_path = self.data_dir / self.INDEX_FILE
        self._client = client
        self._timeout = timeout
        self._verify = verify
        self.index: StagingIndex = load_document(
            self.index_path, StagingIndex.from_dict, StagingIndex
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_staged(self, url: str) -> bool:
        location = self.index.url_to_path.get(url)
        return location is not None and Path(location).is_dir()

    def extracted_path(self, url: str) -> Path | None:
        """Extracted tree for a staged URL, or None when not staged."""
        if not self.is_staged(url):
            return None
        return Path(self.index.url_to_path[url]) / "extracted"

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def ensure_staged(self, url: str) -> Path:
        """Return the extracted tree for *url*, downloading it first if needed.

        Raises:
            StagingError: if the download or extraction fails. No index entry
                or partial directory is left behind.
        """
        cached = self.extracted_path(url)
        if cached is not None:
            return cached

        # Remove any stale mapping before touching the network.
        if url in self.index.url_to_path:
            del self.index.url_to_path[url]
            self._save_index()

        bundle_dir = self.staging_dir / staging_key(url)
        if bundle_dir.exists():
            shutil.rmtree(bundle_dir)
        bundle_dir.mkdir(parents=True)

        started = time.perf_counter()
        try:
            archive = bundle_dir / f"bundle{_guess_suffix(url)}"
            self._fetch(url, archive)
            extracted = bundle_dir / "extracted"
            extract_bundle(archive, extracted, _source_name(url))
        except StagingError:
            shutil.rmtree(bundle_dir, ignore_errors=True)
            raise
        except (OSError, httpx.HTTPError) as exc:
            shutil.rmtree(bundle_dir, ignore_errors=True)
            raise StagingError(f"Failed to stage {url}: {exc}") from exc

        self.index.url_to_path[url] = str(bundle_dir)
        self._save_index()
        log_event(
            log, logging.INFO, "bundle.staged", url=url, key=bundle_dir.name,
            duration_ms=elapsed_ms(started),
        )
        return extracted

    def clear_staged(self, url: str) -> None:
        """Delete the cached directory for *url* and forget its mapping."""
        location = self.index.url_to_path.pop(url, None)
        if location is None:
            return
        shutil.rmtree(location, ignore_errors=True)
        self._save_index()
        log_event(log, logging.INFO, "bundle.unstaged", url=url)

    def analyze(self, url: str) -> StagedBundleInfo:
        """Stage *url* and describe its top-level layout.

        Each top-level directory is suggested as an install mapping onto the
        same name under the installation root.
        """
        extracted = self.ensure_staged(url)
        directories = sorted(p.name for p in extracted.iterdir() if p.is_dir())
        files = sorted(p.name for p in extracted.iterdir() if p.is_file())
        return StagedBundleInfo(
            url=url,
            extracted_path=str(extracted),
            directories=directories,
            files=files,
            suggested_install_paths=[
                InstallPath(source=name, target=f"{ROOT_PLACEHOLDER}/{name}")
                for name in directories
            ],
        )

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _save_index(self) -> None:
        write_json_atomic(self.index_path, self.index.to_dict())

    def _http(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                timeout=self._timeout, verify=self._verify, follow_redirects=True
            )
        return self._client

    def _fetch(self, url: str, destination: Path) -> None:
        local = _local_source(url)
        if local is not None:
            if not local.is_file():
                raise StagingError(f"Bundle source not found: {local}")
            shutil.copyfile(local, destination)
            return

        with self._http().stream("GET", url) as response:
            if response.status_code >= 400:
                raise StagingError(f"Download of {url} failed: HTTP {response.status_code}")
            with destination.open("wb") as handle:
                for chunk in response.iter_bytes():
                    handle.write(chunk)


def _local_source(url: str) -> Path | None:
    parsed = urlparse(url)
    if parsed.scheme == "file":
        return Path(unquote(parsed.path))
    if parsed.scheme in ("http", "https"):
        return None
    # A bare filesystem path (including Windows drive letters).
    return Path(url)


def _source_name(url: str) -> str | None:
    local = _local_source(url)
    if local is not None:
        return local.name or None
    return unquote(PurePosixPath(urlparse(url).path).name) or None


def _guess_suffix(url: str) -> str:
    name = PurePosixPath(urlparse(url).path.replace("\\", "/")).name.lower()
    for suffix in _ARCHIVE_SUFFIXES:
        if name.endswith(suffix):
            return suffix
    return PurePosixPath(name).suffix or ".bin"


def _check_member(name: str) -> None:
    parts = PurePosixPath(name.replace("\\", "/")).parts
    if name.startswith(("/", "\\")) or ".." in parts or (parts and ":" in parts[0]):
        raise StagingError(f"Archive member escapes extraction directory: {name}")


def extract_bundle(archive: Path, destination: Path, file_name: str | None = None) -> None:
    """Extract *archive* into *destination*.

    Zip and tar archives are unpacked after every member name is checked for
    traversal; anything else is treated as a single-file bundle and copied
    into *destination* as *file_name*.
    """
    destination.mkdir(parents=True, exist_ok=True)
    if zipfile.is_zipfile(archive):
        with zipfile.ZipFile(archive) as bundle:
            for name in bundle.namelist():
                _check_member(name)
        shutil.unpack_archive(str(archive), str(destination), format="zip")
        return
    if tarfile.is_tarfile(archive):
        with tarfile.open(archive) as bundle:
            for member in bundle.getmembers():
                _check_member(member.name)
                if member.issym() or member.islnk():
                    raise StagingError(f"Archive links are not supported: {member.name}")
            if hasattr(tarfile, "data_filter"):
                bundle.extractall(destination, filter="data")
            else:
                bundle.extractall(destination)
        return
    shutil.copyfile(archive, destination / (file_name or archive.name))
