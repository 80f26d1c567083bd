from __future__ import annotations

import configparser
import logging
from pathlib import Path
from typing import Sequence

from modupdater.common.config import BACKUP_SUFFIX, MOD_INI_NAME, VERSION_FILE_NAME
from modupdater.common.types import ModDescriptor, ModularSource, ReleaseAssetSource, UpdateSource


log = logging.getLogger(__name__)

_SECTION = "mod"


def _read_ini(path: Path) -> dict[str, str]:
    # mod.ini has no section header; give it one so configparser accepts it.
    parser = configparser.ConfigParser(interpolation=None, strict=False)
    parser.optionxform = str  # type: ignore[assignment]
    text = path.read_text(encoding="utf-8-sig", errors="replace")
    parser.read_string(f"[{_SECTION}]\n{text}", source=str(path))
    return {k.lower(): v.strip() for k, v in parser.items(_SECTION)}


def _source_from_ini(values: dict[str, str]) -> UpdateSource | None:
    repo = values.get("githubrepo", "")
    if repo:
        return ReleaseAssetSource(repo=repo, asset=values.get("githubasset", ""))
    update_url = values.get("updateurl", "")
    if update_url:
        return ModularSource(base_url=update_url)
    return None


def load_mod(mod_dir: Path) -> ModDescriptor:
    values = _read_ini(mod_dir / MOD_INI_NAME)
    version = values.get("version", "")
    version_file = mod_dir / VERSION_FILE_NAME
    if version_file.is_file():
        version = version_file.read_text(encoding="utf-8-sig").strip() or version
    return ModDescriptor(
        key=mod_dir.name,
        name=values.get("name", "") or mod_dir.name,
        version=version,
        source=_source_from_ini(values),
        mod_dir=mod_dir,
    )


def load_mods(mods_dir: Path, keys: Sequence[str] | None = None) -> list[ModDescriptor]:
    """Load descriptors for the mods under ``mods_dir``.

    With ``keys`` only those mods are returned, in that order; otherwise every folder
    holding a ``mod.ini`` is loaded in directory-name order.
    """
    if keys is not None:
        candidates = [mods_dir / key for key in keys]
    elif mods_dir.is_dir():
        candidates = sorted(
            p
            for p in mods_dir.iterdir()
            if p.is_dir() and not p.name.startswith(".") and not p.name.endswith(BACKUP_SUFFIX)
        )
    else:
        candidates = []

    mods: list[ModDescriptor] = []
    for mod_dir in candidates:
        if not (mod_dir / MOD_INI_NAME).is_file():
            if keys is not None:
                log.warning("Mod %s has no %s; skipping", mod_dir.name, MOD_INI_NAME)
            continue
        try:
            mods.append(load_mod(mod_dir))
        except (OSError, configparser.Error) as exc:
            log.warning("Could not read %s for %s: %s", MOD_INI_NAME, mod_dir.name, exc)
    return mods
