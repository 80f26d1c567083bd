from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterator, Union

from modupdater.common.errors import ParseError


def normalize_manifest_path(path: str) -> str:
    return str(path).replace("\\", "/").strip().lstrip("/")


@dataclass(frozen=True)
class ManifestEntry:
    path: str
    sha256: str
    size: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "path", normalize_manifest_path(self.path))
        object.__setattr__(self, "sha256", str(self.sha256).strip().lower())

    def same_content(self, other: "ManifestEntry") -> bool:
        return self.sha256 == other.sha256 and self.size == other.size


@dataclass(frozen=True)
class Manifest:
    """Files of a mod keyed by relative path, in publication order."""

    entries: tuple[ManifestEntry, ...] = ()
    _by_path: dict[str, ManifestEntry] = field(default_factory=dict, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        entries = tuple(self.entries)
        object.__setattr__(self, "entries", entries)
        for entry in entries:
            if entry.path in self._by_path:
                raise ParseError(f"Manifest contains duplicate path: {entry.path}")
            self._by_path[entry.path] = entry

    def __iter__(self) -> Iterator[ManifestEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, path: object) -> bool:
        return isinstance(path, str) and normalize_manifest_path(path) in self._by_path

    def get(self, path: str) -> ManifestEntry | None:
        return self._by_path.get(normalize_manifest_path(path))

    def paths(self) -> list[str]:
        return [entry.path for entry in self.entries]


class ManifestState(str, Enum):
    UNCHANGED = "unchanged"
    ADDED = "added"
    MODIFIED = "modified"
    REMOVED = "removed"


@dataclass(frozen=True)
class ManifestDiffEntry:
    path: str
    state: ManifestState
    current: ManifestEntry | None = None
    reference: ManifestEntry | None = None

    @property
    def needs_download(self) -> bool:
        return self.state in (ManifestState.ADDED, ManifestState.MODIFIED)


@dataclass(frozen=True)
class ReleaseAssetSource:
    repo: str
    asset: str


@dataclass(frozen=True)
class ModularSource:
    base_url: str


UpdateSource = Union[ReleaseAssetSource, ModularSource]


@dataclass(frozen=True)
class ModDescriptor:
    key: str
    name: str
    version: str = ""
    source: UpdateSource | None = None
    mod_dir: Path | None = None

    @property
    def display_name(self) -> str:
        return self.name or self.key


@dataclass(frozen=True)
class ModDownload:
    key: str
    name: str
    kind: str
    version: str
    urls: tuple[str, ...]
    files: tuple[ManifestDiffEntry, ...] = ()
    manifest: Manifest | None = None
    size: int = 0
    current_version: str = ""
    release_notes: str = ""
    published_at: str = ""
    page_url: str = ""

    @property
    def is_modular(self) -> bool:
        return self.kind == "modular"

    def files_to_fetch(self) -> list[ManifestDiffEntry]:
        return [f for f in self.files if f.needs_download]

    def files_to_remove(self) -> list[ManifestDiffEntry]:
        return [f for f in self.files if f.state is ManifestState.REMOVED]


@dataclass
class ResolutionResult:
    updates: list[ModDownload] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class RepairItem:
    mod: ModDescriptor
    diff: tuple[ManifestDiffEntry, ...]

    def failed_count(self) -> int:
        return sum(1 for d in self.diff if d.state is not ManifestState.UNCHANGED)
