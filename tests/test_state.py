from __future__ import annotations

import json
import os
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

from modupdater.common.config import AppPaths, RuntimeConfig
from modupdater.common.state import (
    STATE_FILE_NAME,
    UpdateCheckState,
    UpdateUnit,
    load_update_state,
    save_update_state,
    update_time_elapsed,
)


class UpdateTimeTests(unittest.TestCase):
    NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

    def test_always_and_never_checked(self) -> None:
        self.assertTrue(update_time_elapsed(UpdateUnit.ALWAYS, 1, self.NOW, self.NOW))
        self.assertTrue(update_time_elapsed(UpdateUnit.WEEKS, 4, None, self.NOW))

    def test_units(self) -> None:
        cases = [
            (UpdateUnit.HOURS, 3, timedelta(hours=2), False),
            (UpdateUnit.HOURS, 3, timedelta(hours=3), True),
            (UpdateUnit.DAYS, 1, timedelta(hours=23), False),
            (UpdateUnit.DAYS, 1, timedelta(days=1, minutes=1), True),
            (UpdateUnit.WEEKS, 2, timedelta(days=13), False),
            (UpdateUnit.WEEKS, 2, timedelta(days=14), True),
        ]
        for unit, amount, ago, expected in cases:
            with self.subTest(unit=unit, ago=ago):
                self.assertEqual(update_time_elapsed(unit, amount, self.NOW - ago, self.NOW), expected)

    def test_check_disabled(self) -> None:
        state = UpdateCheckState(mod_update_check=False)
        self.assertFalse(state.is_check_due(self.NOW))

    def test_touch_makes_daily_check_not_due(self) -> None:
        state = UpdateCheckState(update_unit=UpdateUnit.DAYS, update_frequency=1)
        self.assertTrue(state.is_check_due())
        state.touch_update_time()
        self.assertFalse(state.is_check_due())


class StateFileTests(unittest.TestCase):
    def test_defaults_when_missing(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            state = load_update_state(Path(td))
            self.assertEqual(state, UpdateCheckState())

    def test_save_and_load(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            state = UpdateCheckState(update_unit=UpdateUnit.HOURS, update_frequency=6)
            state.touch_update_time()
            save_update_state(Path(td), state)
            raw = json.loads((Path(td) / STATE_FILE_NAME).read_text(encoding="utf-8"))
            self.assertEqual(raw["update_unit"], "hours")
            self.assertEqual(load_update_state(Path(td)), state)

    def test_tolerates_bom_and_unknown_unit(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            payload = json.dumps({"update_unit": "fortnights", "update_frequency": 2})
            (Path(td) / STATE_FILE_NAME).write_text("\ufeff" + payload, encoding="utf-8")
            state = load_update_state(Path(td))
            self.assertEqual(state.update_unit, UpdateUnit.ALWAYS)
            self.assertEqual(state.update_frequency, 2)

    def test_corrupt_file_falls_back_to_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            for body in ('{"update_unit": "days", ', "[1, 2]"):
                with self.subTest(body=body):
                    (Path(td) / STATE_FILE_NAME).write_text(body, encoding="utf-8")
                    with self.assertLogs("modupdater.common.state", level="WARNING"):
                        state = load_update_state(Path(td))
                    self.assertEqual(state, UpdateCheckState())


class ConfigTests(unittest.TestCase):
    def test_paths_for_game_root(self) -> None:
        paths = AppPaths.for_game_root(Path("/games/sadx"))
        self.assertEqual(paths.mods_dir, Path("/games/sadx/mods"))
        self.assertEqual(paths.updates_dir, Path("/games/sadx/mods/.updates"))
        self.assertEqual(paths.mod_dir("CoolMod"), Path("/games/sadx/mods/CoolMod"))

    def test_runtime_from_env(self) -> None:
        env = {
            "MODUPDATER_GITHUB_API": "https://ghe.example.com/api/v3/",
            "MODUPDATER_GITHUB_TOKEN": " token ",
            "MODUPDATER_READ_TIMEOUT": "5",
            "MODUPDATER_ALLOW_HTTP": "0",
        }
        with mock.patch.dict(os.environ, env, clear=False):
            runtime = RuntimeConfig.from_env()
        self.assertEqual(runtime.github_api_url, "https://ghe.example.com/api/v3")
        self.assertEqual(runtime.github_token, "token")
        self.assertEqual(runtime.timeout, (10, 5))
        self.assertFalse(runtime.allow_insecure_http)


if __name__ == "__main__":
    unittest.main()
