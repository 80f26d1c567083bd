from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any


log = logging.getLogger(__name__)

STATE_FILE_NAME = "update_state.v1.json"


class UpdateUnit(str, Enum):
    ALWAYS = "always"
    HOURS = "hours"
    DAYS = "days"
    WEEKS = "weeks"


def update_time_elapsed(unit: UpdateUnit, amount: int, start: datetime | None, now: datetime | None = None) -> bool:
    if unit is UpdateUnit.ALWAYS or start is None:
        return True
    now = now or datetime.now(timezone.utc)
    span = now - start
    if unit is UpdateUnit.HOURS:
        return span >= timedelta(hours=amount)
    if unit is UpdateUnit.DAYS:
        return span >= timedelta(days=amount)
    if unit is UpdateUnit.WEEKS:
        return span >= timedelta(weeks=amount)
    raise ValueError(f"Unknown update unit: {unit!r}")


@dataclass
class UpdateCheckState:
    mod_update_check: bool = True
    update_unit: UpdateUnit = UpdateUnit.ALWAYS
    update_frequency: int = 1
    last_mod_update_check_utc: str | None = None

    def last_check(self) -> datetime | None:
        if not self.last_mod_update_check_utc:
            return None
        try:
            return datetime.fromisoformat(self.last_mod_update_check_utc)
        except ValueError:
            return None

    def is_check_due(self, now: datetime | None = None) -> bool:
        if not self.mod_update_check:
            return False
        return update_time_elapsed(self.update_unit, self.update_frequency, self.last_check(), now)

    def touch_update_time(self) -> None:
        self.last_mod_update_check_utc = datetime.now(timezone.utc).isoformat()


def _state_file(state_dir: Path) -> Path:
    return state_dir / STATE_FILE_NAME


def _parse_unit(value: Any) -> UpdateUnit:
    try:
        return UpdateUnit(str(value).lower())
    except ValueError:
        return UpdateUnit.ALWAYS


def load_update_state(state_dir: Path) -> UpdateCheckState:
    path = _state_file(state_dir)
    if not path.exists():
        return UpdateCheckState()

    try:
        # Accept optional UTF-8 BOM left behind by Windows editors.
        with path.open("r", encoding="utf-8-sig") as fh:
            raw: dict[str, Any] = json.load(fh)
        return UpdateCheckState(
            mod_update_check=bool(raw.get("mod_update_check", True)),
            update_unit=_parse_unit(raw.get("update_unit", UpdateUnit.ALWAYS.value)),
            update_frequency=max(int(raw.get("update_frequency", 1)), 0),
            last_mod_update_check_utc=raw.get("last_mod_update_check_utc"),
        )
    except (ValueError, TypeError, AttributeError) as exc:
        log.warning("Ignoring unreadable update state %s: %s", path, exc)
        return UpdateCheckState()


def save_update_state(state_dir: Path, state: UpdateCheckState) -> None:
    path = _state_file(state_dir)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = asdict(state)
    payload["update_unit"] = state.update_unit.value
    tmp = path.with_suffix(".tmp")
    with tmp.open("w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2, sort_keys=True)
    tmp.replace(path)
