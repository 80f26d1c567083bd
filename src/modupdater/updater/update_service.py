from __future__ import annotations

import logging
import threading
from typing import Sequence

import requests

from modupdater.common.config import RuntimeConfig
from modupdater.common.errors import ConfigError, ModUpdateError
from modupdater.common.manifest import load_manifest, unchanged_manifest
from modupdater.common.types import (
    Manifest,
    ModDescriptor,
    ModDownload,
    ModularSource,
    ReleaseAssetSource,
    RepairItem,
    ResolutionResult,
)
from modupdater.updater.sources import GitHubReleaseSource, ModularManifestSource, build_session


log = logging.getLogger(__name__)


class ModUpdateService:
    """Resolves available updates for a set of mods, one mod at a time.

    Every per-mod failure becomes a ``"[name] message"`` entry in the result's error
    list; a pass only stops early when ``cancel`` is set, which is checked before each
    mod.
    """

    def __init__(self, runtime: RuntimeConfig, session: requests.Session | None = None):
        self.runtime = runtime
        self.session = session if session is not None else build_session(runtime)
        self.releases = GitHubReleaseSource(self.session, runtime)
        self.modular = ModularManifestSource(self.session, runtime)

    def _reference_manifest(self, mod: ModDescriptor) -> Manifest:
        if mod.mod_dir is None:
            return Manifest()
        return load_manifest(mod.mod_dir / self.runtime.manifest_file_name)

    def _check_mod(
        self,
        mod: ModDescriptor,
        force: bool,
        reference: Manifest | None = None,
    ) -> ModDownload | None:
        source = mod.source
        if isinstance(source, ReleaseAssetSource):
            if not source.asset.strip():
                raise ConfigError("GitHubRepo specified, but GitHubAsset is missing.")
            return self.releases.check(mod, source, force=force)
        if isinstance(source, ModularSource):
            if reference is None:
                reference = self._reference_manifest(mod)
            return self.modular.check(mod, source, reference, force=force)
        return None

    def _run_one(
        self,
        mod: ModDescriptor,
        result: ResolutionResult,
        force: bool,
        reference: Manifest | None = None,
    ) -> None:
        try:
            download = self._check_mod(mod, force, reference)
        except (ModUpdateError, OSError) as exc:
            log.warning("Update check failed for %s: %s", mod.display_name, exc)
            result.errors.append(f"[{mod.display_name}] {exc}")
            return
        if download is not None:
            result.updates.append(download)

    def resolve(
        self,
        mods: Sequence[ModDescriptor],
        cancel: threading.Event | None = None,
        force: bool = False,
    ) -> ResolutionResult:
        result = ResolutionResult()
        checkable = [m for m in mods if m.source is not None]
        log.info("Checking %d of %d mod(s) for updates (force=%s)", len(checkable), len(mods), force)
        for mod in mods:
            if cancel is not None and cancel.is_set():
                log.info("Update check cancelled; %d update(s) found so far", len(result.updates))
                break
            if mod.source is None:
                continue
            self._run_one(mod, result, force)
        return result

    def repair(
        self,
        items: Sequence[RepairItem],
        cancel: threading.Event | None = None,
    ) -> ResolutionResult:
        """Re-fetch the files a verification pass found missing or damaged.

        The local reference for each mod is rebuilt from the diff's unchanged entries,
        so only damaged files diverge from the remote manifest. Release-asset mods are
        always re-downloaded.
        """
        result = ResolutionResult()
        if not items:
            return result
        log.info("Repairing %d mod(s)", len(items))
        for item in items:
            if cancel is not None and cancel.is_set():
                log.info("Repair cancelled; %d download(s) prepared so far", len(result.updates))
                break
            mod = item.mod
            if mod.source is None:
                log.info("Skipping repair of %s: no update source", mod.display_name)
                continue
            if isinstance(mod.source, ModularSource):
                self._run_one(mod, result, force=False, reference=unchanged_manifest(item.diff))
            else:
                self._run_one(mod, result, force=True)
        return result
