from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from modupdater import __version__ as MODUPDATER_VERSION


MANIFEST_FILE_NAME = "mod.manifest"
VERSION_FILE_NAME = "mod.version"
MOD_INI_NAME = "mod.ini"
BACKUP_SUFFIX = ".updbak"


@dataclass(frozen=True)
class AppPaths:
    game_root: Path
    mods_dir: Path
    updates_dir: Path
    logs_dir: Path
    state_dir: Path

    @classmethod
    def default(cls) -> "AppPaths":
        override_root = os.environ.get("MODUPDATER_GAME_ROOT", "").strip()
        game_root = Path(override_root) if override_root else Path.cwd()
        return cls.for_game_root(game_root)

    @classmethod
    def for_game_root(cls, game_root: Path, mods_dir: Path | None = None) -> "AppPaths":
        mods = mods_dir if mods_dir is not None else game_root / "mods"
        return cls(
            game_root=game_root,
            mods_dir=mods,
            updates_dir=mods / ".updates",
            logs_dir=game_root / "logs",
            state_dir=game_root / "state",
        )

    def ensure_layout(self) -> None:
        for path in (
            self.mods_dir,
            self.logs_dir,
            self.state_dir,
        ):
            path.mkdir(parents=True, exist_ok=True)

    def mod_dir(self, key: str) -> Path:
        return self.mods_dir / key


@dataclass(frozen=True)
class RuntimeConfig:
    github_api_url: str = "https://api.github.com"
    github_token: str | None = None
    manifest_file_name: str = MANIFEST_FILE_NAME
    user_agent: str = f"modupdater/{MODUPDATER_VERSION}"
    download_chunk_size: int = 1024 * 1024
    connect_timeout_seconds: int = 10
    read_timeout_seconds: int = 60
    max_retries: int = 3
    allow_insecure_http: bool = True

    @property
    def timeout(self) -> tuple[int, int]:
        return (self.connect_timeout_seconds, self.read_timeout_seconds)

    @classmethod
    def from_env(cls) -> "RuntimeConfig":
        token = os.environ.get("MODUPDATER_GITHUB_TOKEN", "").strip() or None
        return cls(
            github_api_url=os.environ.get("MODUPDATER_GITHUB_API", "https://api.github.com").rstrip("/"),
            github_token=token,
            manifest_file_name=os.environ.get("MODUPDATER_MANIFEST_NAME", MANIFEST_FILE_NAME),
            user_agent=os.environ.get("MODUPDATER_USER_AGENT", f"modupdater/{MODUPDATER_VERSION}"),
            download_chunk_size=int(os.environ.get("MODUPDATER_DOWNLOAD_CHUNK", str(1024 * 1024))),
            connect_timeout_seconds=int(os.environ.get("MODUPDATER_CONNECT_TIMEOUT", "10")),
            read_timeout_seconds=int(os.environ.get("MODUPDATER_READ_TIMEOUT", "60")),
            max_retries=int(os.environ.get("MODUPDATER_MAX_RETRIES", "3")),
            allow_insecure_http=os.environ.get("MODUPDATER_ALLOW_HTTP", "1").strip() not in {"0", "false", "no"},
        )
