"""Manifest codec, differ and disk scan.

A manifest file has one record per line::

    relative/path.dll<TAB>size<TAB>sha256

Records are keyed by path; blank lines are ignored.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

from modupdater.common.config import BACKUP_SUFFIX, MANIFEST_FILE_NAME, VERSION_FILE_NAME
from modupdater.common.errors import ParseError
from modupdater.common.hashing import sha256_file
from modupdater.common.types import Manifest, ManifestDiffEntry, ManifestEntry, ManifestState


log = logging.getLogger(__name__)

# Bookkeeping files the updater writes itself; never part of a scan.
SCAN_EXCLUDED_NAMES = frozenset({MANIFEST_FILE_NAME, VERSION_FILE_NAME, "mod.tmp"})


def diff_manifests(local: Manifest, reference: Manifest) -> list[ManifestDiffEntry]:
    """Classify every path of ``local`` and ``reference`` exactly once.

    Reference paths come first in reference order, followed by local-only paths in
    local order.
    """
    diff: list[ManifestDiffEntry] = []
    for ref in reference:
        cur = local.get(ref.path)
        if cur is None:
            state = ManifestState.ADDED
        elif cur.same_content(ref):
            state = ManifestState.UNCHANGED
        else:
            state = ManifestState.MODIFIED
        diff.append(ManifestDiffEntry(path=ref.path, state=state, current=cur, reference=ref))

    for cur in local:
        if cur.path not in reference:
            diff.append(ManifestDiffEntry(path=cur.path, state=ManifestState.REMOVED, current=cur, reference=None))
    return diff


def changed_entries(diff: Iterable[ManifestDiffEntry]) -> list[ManifestDiffEntry]:
    return [entry for entry in diff if entry.state is not ManifestState.UNCHANGED]


def unchanged_manifest(diff: Iterable[ManifestDiffEntry]) -> Manifest:
    """Rebuild the list of files known to be intact from a verification diff."""
    return Manifest(
        tuple(entry.current for entry in diff if entry.state is ManifestState.UNCHANGED and entry.current is not None)
    )


def parse_manifest_text(text: str, source: str = "<manifest>") -> Manifest:
    entries: list[ManifestEntry] = []
    seen: set[str] = set()
    for lineno, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        fields = line.split("\t")
        if len(fields) != 3:
            raise ParseError(f"{source}:{lineno}: expected 3 tab-separated fields, got {len(fields)}")
        path, size_raw, digest = (f.strip() for f in fields)
        if not path:
            raise ParseError(f"{source}:{lineno}: empty path")
        try:
            size = int(size_raw)
        except ValueError:
            raise ParseError(f"{source}:{lineno}: invalid size {size_raw!r}") from None
        if size < 0:
            raise ParseError(f"{source}:{lineno}: negative size {size}")
        if not digest:
            raise ParseError(f"{source}:{lineno}: empty hash")
        entry = ManifestEntry(path=path, sha256=digest, size=size)
        if entry.path in seen:
            raise ParseError(f"{source}:{lineno}: duplicate path {entry.path}")
        seen.add(entry.path)
        entries.append(entry)
    return Manifest(tuple(entries))


def format_manifest(manifest: Manifest) -> str:
    return "".join(f"{e.path}\t{e.size}\t{e.sha256}\n" for e in manifest)


def load_manifest(path: Path) -> Manifest:
    if not path.exists():
        return Manifest()
    try:
        with path.open("r", encoding="utf-8-sig") as fh:
            text = fh.read()
    except UnicodeDecodeError:
        raise ParseError(f"{path}: not valid UTF-8") from None
    return parse_manifest_text(text, source=str(path))


def save_manifest(path: Path, manifest: Manifest) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    with tmp.open("w", encoding="utf-8", newline="\n") as fh:
        fh.write(format_manifest(manifest))
    tmp.replace(path)


def scan_directory(mod_dir: Path, chunk_size: int = 1024 * 1024) -> Manifest:
    entries: list[ManifestEntry] = []
    for file_path in sorted(p for p in mod_dir.rglob("*") if p.is_file()):
        rel = file_path.relative_to(mod_dir).as_posix()
        if rel in SCAN_EXCLUDED_NAMES or file_path.name.endswith(BACKUP_SUFFIX):
            continue
        entries.append(
            ManifestEntry(
                path=rel,
                sha256=sha256_file(file_path, chunk_size=chunk_size),
                size=file_path.stat().st_size,
            )
        )
    return Manifest(tuple(entries))


def verify_mod(mod_dir: Path, manifest_name: str = MANIFEST_FILE_NAME) -> list[ManifestDiffEntry]:
    """Diff the files on disk against the mod's reference manifest.

    Only paths listed in the reference are checked; files the mod created at runtime
    (saves, configs) are not reported.
    """
    reference = load_manifest(mod_dir / manifest_name)
    present: list[ManifestEntry] = []
    for ref in reference:
        file_path = mod_dir / ref.path
        if file_path.is_file():
            present.append(ManifestEntry(path=ref.path, sha256=sha256_file(file_path), size=file_path.stat().st_size))
    diff = diff_manifests(Manifest(tuple(present)), reference)
    failed = len(changed_entries(diff))
    if failed:
        log.info("Verification of %s: %d of %d file(s) differ", mod_dir.name, failed, len(reference))
    return diff


def generate_manifest(mod_dir: Path, manifest_name: str = MANIFEST_FILE_NAME) -> tuple[Manifest, list[ManifestDiffEntry]]:
    """Write a fresh manifest for ``mod_dir`` and return it with its diff to the old one."""
    previous = load_manifest(mod_dir / manifest_name)
    current = scan_directory(mod_dir)
    diff = diff_manifests(previous, current)
    save_manifest(mod_dir / manifest_name, current)
    log.info("Generated manifest for %s (%d files)", mod_dir.name, len(current))
    return current, diff
