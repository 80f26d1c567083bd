from __future__ import annotations

import logging
import os
import shutil
import threading
import zipfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Callable, Sequence
from urllib.parse import unquote, urlparse

import requests

from modupdater.common.config import BACKUP_SUFFIX, VERSION_FILE_NAME, AppPaths, RuntimeConfig
from modupdater.common.errors import ChecksumError, ModUpdateError, NetworkError, UpdateCancelledError
from modupdater.common.hashing import sha256_file
from modupdater.common.manifest import load_manifest, save_manifest, scan_directory
from modupdater.common.types import Manifest, ManifestDiffEntry, ModDownload
from modupdater.common.url_policy import validate_relative_path, validate_update_url
from modupdater.updater.sources import build_session, http_get


log = logging.getLogger(__name__)


@dataclass(frozen=True)
class InstallerProgress:
    phase: str
    message: str
    mod_name: str | None = None
    file_name: str | None = None
    file_index: int | None = None
    file_total: int | None = None
    bytes_done: int | None = None
    bytes_total: int | None = None


ProgressCallback = Callable[[InstallerProgress], None]


class ModInstaller:
    """Downloads resolved updates into a staging area and applies them to mod folders.

    Modular updates replace individual files and keep a per-file backup until the new
    reference manifest is written; release updates merge an extracted archive over the
    mod folder after copying the whole folder aside. Either way a failure restores the
    previous files, and ``recover_interrupted`` restores backups left by a crash.
    """

    def __init__(self, paths: AppPaths, runtime: RuntimeConfig, session: requests.Session | None = None):
        self.paths = paths
        self.runtime = runtime
        self.session = session if session is not None else build_session(runtime)

    def _emit(self, callback: ProgressCallback | None, progress: InstallerProgress) -> None:
        if callback is None:
            return
        try:
            callback(progress)
        except Exception:
            log.exception("Installer progress callback failed.")

    @staticmethod
    def _check_cancel(cancel: threading.Event | None) -> None:
        if cancel is not None and cancel.is_set():
            raise UpdateCancelledError("Download cancelled.")

    def install_all(
        self,
        downloads: Sequence[ModDownload],
        progress_callback: ProgressCallback | None = None,
        cancel: threading.Event | None = None,
    ) -> tuple[list[str], list[str]]:
        """Install every download, isolating failures per mod.

        Returns the keys of installed mods and the error messages of failed ones.
        Cancellation stops before the next file and propagates.
        """
        installed: list[str] = []
        errors: list[str] = []
        try:
            for download in downloads:
                mod_dir = self.paths.mod_dir(download.key)
                try:
                    self.install(download, mod_dir, progress_callback=progress_callback, cancel=cancel)
                except UpdateCancelledError:
                    raise
                except (ModUpdateError, OSError, ValueError, zipfile.BadZipFile) as exc:
                    log.warning("Installing update for %s failed: %s", download.name, exc)
                    errors.append(f"[{download.name}] {exc}")
                    continue
                installed.append(download.key)
        finally:
            self._remove_updates_dir()
        return installed, errors

    def install(
        self,
        download: ModDownload,
        mod_dir: Path,
        progress_callback: ProgressCallback | None = None,
        cancel: threading.Event | None = None,
    ) -> None:
        self.recover_interrupted(mod_dir)
        staging = self.paths.updates_dir / download.key
        if staging.exists():
            shutil.rmtree(staging, ignore_errors=True)
        staging.mkdir(parents=True, exist_ok=True)
        self._emit(
            progress_callback,
            InstallerProgress(
                phase="prepare",
                message=f"Preparing update for {download.name} ({download.version})",
                mod_name=download.name,
            ),
        )
        try:
            if download.is_modular:
                self._install_modular(download, mod_dir, staging, progress_callback, cancel)
            else:
                self._install_release(download, mod_dir, staging, progress_callback, cancel)
        finally:
            shutil.rmtree(staging, ignore_errors=True)
        self._emit(
            progress_callback,
            InstallerProgress(phase="complete", message=f"Updated {download.name}", mod_name=download.name),
        )
        log.info("Installed %s %s into %s", download.name, download.version, mod_dir)

    def _remove_updates_dir(self) -> None:
        updates = self.paths.updates_dir
        if updates.exists():
            shutil.rmtree(updates, ignore_errors=True)

    def recover_interrupted(self, mod_dir: Path) -> bool:
        """Put back any backup a crashed apply left next to or inside ``mod_dir``."""
        recovered = False
        dir_backup = mod_dir.with_name(mod_dir.name + BACKUP_SUFFIX)
        if dir_backup.is_dir():
            if mod_dir.exists():
                shutil.rmtree(mod_dir)
            dir_backup.replace(mod_dir)
            recovered = True
        if mod_dir.is_dir():
            for backup in sorted(mod_dir.rglob("*" + BACKUP_SUFFIX)):
                if not backup.is_file():
                    continue
                target = backup.with_name(backup.name[: -len(BACKUP_SUFFIX)])
                backup.replace(target)
                recovered = True
        if recovered:
            log.info("Recovered interrupted update state for %s", mod_dir.name)
        return recovered

    def _download_file(
        self,
        url: str,
        destination: Path,
        progress_callback: ProgressCallback | None = None,
        progress: InstallerProgress | None = None,
        cancel: threading.Event | None = None,
    ) -> int:
        validate_update_url(url, allow_http=self.runtime.allow_insecure_http)
        destination.parent.mkdir(parents=True, exist_ok=True)
        bytes_done = 0
        last_emitted = 0
        emit_threshold = max(4 * 1024 * 1024, self.runtime.download_chunk_size * 4)
        with http_get(self.session, url, self.runtime, stream=True) as resp:
            content_len_raw = resp.headers.get("Content-Length", "").strip()
            bytes_total = int(content_len_raw) if content_len_raw.isdigit() else None
            try:
                with destination.open("wb") as fh:
                    for chunk in resp.iter_content(chunk_size=self.runtime.download_chunk_size):
                        self._check_cancel(cancel)
                        if not chunk:
                            continue
                        fh.write(chunk)
                        bytes_done += len(chunk)
                        if progress is not None and (bytes_done - last_emitted) >= emit_threshold:
                            self._emit(
                                progress_callback,
                                InstallerProgress(
                                    phase="download-progress",
                                    message=progress.message,
                                    mod_name=progress.mod_name,
                                    file_name=progress.file_name,
                                    file_index=progress.file_index,
                                    file_total=progress.file_total,
                                    bytes_done=bytes_done,
                                    bytes_total=bytes_total,
                                ),
                            )
                            last_emitted = bytes_done
            except requests.RequestException as exc:
                raise NetworkError(f"Download of {url} failed: {exc}") from exc
        return bytes_done

    @staticmethod
    def _verify_file(path: Path, entry: ManifestDiffEntry, chunk_size: int) -> None:
        ref = entry.reference
        if ref is None:
            return
        size = path.stat().st_size
        if size != ref.size:
            raise ChecksumError(f"Size mismatch for {entry.path}: {size} != {ref.size}")
        digest = sha256_file(path, chunk_size=chunk_size)
        if digest.lower() != ref.sha256.lower():
            raise ChecksumError(f"Checksum mismatch for {entry.path}: {digest} != {ref.sha256}")

    def _install_modular(
        self,
        download: ModDownload,
        mod_dir: Path,
        staging: Path,
        progress_callback: ProgressCallback | None,
        cancel: threading.Event | None,
    ) -> None:
        to_fetch = download.files_to_fetch()
        file_total = len(to_fetch)
        staged: list[tuple[PurePosixPath, Path]] = []
        for idx, (entry, url) in enumerate(zip(to_fetch, download.urls), start=1):
            self._check_cancel(cancel)
            rel = validate_relative_path(entry.path)
            destination = staging.joinpath(*rel.parts)
            progress = InstallerProgress(
                phase="download-start",
                message=f"Downloading {entry.path}",
                mod_name=download.name,
                file_name=entry.path,
                file_index=idx,
                file_total=file_total,
            )
            self._emit(progress_callback, progress)
            self._download_file(url, destination, progress_callback, progress, cancel)
            self._verify_file(destination, entry, self.runtime.download_chunk_size)
            staged.append((rel, destination))

        # Past this point the update is committed; cancellation is no longer honoured.
        self._emit(
            progress_callback,
            InstallerProgress(phase="apply-start", message=f"Applying files to {mod_dir.name}", mod_name=download.name),
        )
        removals = [validate_relative_path(e.path) for e in download.files_to_remove()]
        self._apply_files(mod_dir, staged, removals)
        if download.manifest is not None:
            save_manifest(mod_dir / self.runtime.manifest_file_name, download.manifest)

    def _apply_files(
        self,
        mod_dir: Path,
        staged: list[tuple[PurePosixPath, Path]],
        removals: list[PurePosixPath],
    ) -> None:
        backups: list[tuple[Path, Path]] = []
        created: list[Path] = []
        try:
            for rel, source in staged:
                target = mod_dir.joinpath(*rel.parts)
                backup = target.with_name(target.name + BACKUP_SUFFIX)
                if target.exists():
                    target.replace(backup)
                    backups.append((target, backup))
                else:
                    created.append(target)
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.move(str(source), str(target))
            for rel in removals:
                target = mod_dir.joinpath(*rel.parts)
                if target.is_file():
                    backup = target.with_name(target.name + BACKUP_SUFFIX)
                    target.replace(backup)
                    backups.append((target, backup))
        except BaseException:
            log.exception("Applying files to %s failed. Rolling back.", mod_dir)
            for target in created:
                if target.exists():
                    target.unlink()
            for target, backup in reversed(backups):
                if target.exists():
                    target.unlink()
                if backup.exists():
                    backup.replace(target)
            raise
        else:
            for _, backup in backups:
                if backup.exists():
                    backup.unlink()

    def _install_release(
        self,
        download: ModDownload,
        mod_dir: Path,
        staging: Path,
        progress_callback: ProgressCallback | None,
        cancel: threading.Event | None,
    ) -> None:
        if not download.urls:
            raise ModUpdateError(f"No download URL for {download.name}")
        url = download.urls[0]
        archive = staging / self._asset_filename(url)
        progress = InstallerProgress(
            phase="download-start",
            message=f"Downloading {archive.name}",
            mod_name=download.name,
            file_name=archive.name,
            file_index=1,
            file_total=1,
        )
        self._emit(progress_callback, progress)
        bytes_done = self._download_file(url, archive, progress_callback, progress, cancel)
        if download.size > 0 and bytes_done != download.size:
            raise ChecksumError(f"Size mismatch for {archive.name}: {bytes_done} != {download.size}")
        self._check_cancel(cancel)

        if zipfile.is_zipfile(archive):
            self._emit(
                progress_callback,
                InstallerProgress(phase="extract-start", message=f"Extracting {archive.name}", mod_name=download.name),
            )
            source_dir = self._single_root(self._extract_archive(archive, staging))
        else:
            source_dir = staging / "single_file"
            source_dir.mkdir(parents=True, exist_ok=True)
            shutil.move(str(archive), str(source_dir / archive.name))

        self._emit(
            progress_callback,
            InstallerProgress(phase="apply-start", message=f"Applying files to {mod_dir.name}", mod_name=download.name),
        )
        self._apply_tree(mod_dir, source_dir, download.version)

    def _apply_tree(self, mod_dir: Path, source_dir: Path, version: str) -> None:
        backup = mod_dir.with_name(mod_dir.name + BACKUP_SUFFIX)
        if backup.exists():
            shutil.rmtree(backup, ignore_errors=True)
        had_previous = mod_dir.exists()
        if had_previous:
            shutil.copytree(mod_dir, backup)
        try:
            previous = load_manifest(mod_dir / self.runtime.manifest_file_name)
            shutil.copytree(source_dir, mod_dir, dirs_exist_ok=True)
            self._refresh_manifest(mod_dir, source_dir, previous)
            (mod_dir / VERSION_FILE_NAME).write_text(version + "\n", encoding="utf-8")
        except BaseException:
            log.exception("Applying release to %s failed. Rolling back.", mod_dir)
            if mod_dir.exists():
                shutil.rmtree(mod_dir, ignore_errors=True)
            if had_previous and backup.exists():
                backup.replace(mod_dir)
            raise
        else:
            if backup.exists():
                shutil.rmtree(backup, ignore_errors=True)

    def _refresh_manifest(self, mod_dir: Path, source_dir: Path, previous: Manifest) -> None:
        """Write the reference manifest for a freshly merged release.

        A manifest shipped in the archive wins, and files the old manifest listed but the
        shipped one drops are deleted. Otherwise the merged folder is scanned.
        """
        manifest_path = mod_dir / self.runtime.manifest_file_name
        if (source_dir / self.runtime.manifest_file_name).is_file():
            current = load_manifest(manifest_path)
            for entry in previous:
                if entry.path in current:
                    continue
                target = mod_dir.joinpath(*validate_relative_path(entry.path).parts)
                if target.is_file():
                    log.info("Removing %s dropped from %s", entry.path, mod_dir.name)
                    target.unlink()
            return
        save_manifest(manifest_path, scan_directory(mod_dir, chunk_size=self.runtime.download_chunk_size))

    @staticmethod
    def _asset_filename(url: str) -> str:
        name = unquote(PurePosixPath(urlparse(url).path).name).strip()
        if not name or name in {".", ".."} or any(ch in name for ch in ("/", "\\")):
            return "asset.bin"
        return name

    def _extract_archive(self, archive: Path, staging: Path) -> Path:
        target = staging / f"{archive.stem}_extracted"
        target.mkdir(parents=True, exist_ok=True)
        root = target.resolve()
        with zipfile.ZipFile(archive, "r") as zf:
            for info in zf.infolist():
                member = validate_relative_path(info.filename)

                # Block symlinks from archives.
                mode = (info.external_attr >> 16) & 0o170000
                if mode == 0o120000:
                    raise ValueError(f"Archive contains a symbolic link entry: {info.filename}")

                dest_path = (target / Path(*member.parts)).resolve()
                if not str(dest_path).startswith(str(root) + os.sep) and dest_path != root:
                    raise ValueError(f"Archive entry escapes extraction root: {info.filename}")

                if info.is_dir():
                    dest_path.mkdir(parents=True, exist_ok=True)
                    continue

                dest_path.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(info, "r") as src, dest_path.open("wb") as dst:
                    shutil.copyfileobj(src, dst, length=1024 * 1024)
        return target

    @staticmethod
    def _single_root(extracted: Path) -> Path:
        children = [p for p in extracted.iterdir()]
        if len(children) == 1 and children[0].is_dir():
            return children[0]
        return extracted
