from __future__ import annotations

import contextlib
import io
import json
import os
import tempfile
import threading
import unittest
import zipfile
from pathlib import Path
from unittest import mock

from fakes import FakeSession
from modupdater.common.errors import UpdateCancelledError
from modupdater.common.state import STATE_FILE_NAME, load_update_state
from modupdater.updater import cli
from modupdater.updater.mod_installer import ModInstaller


RELEASES_URL = "https://api.github.com/repos/someone/cool-mod/releases"
ZIP_URL = "https://dl.example.com/1.3.0/cool-mod.zip"


class CliTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.root = Path(self._tmp.name)
        self.mod_dir = self.root / "mods" / "CoolMod"
        self.mod_dir.mkdir(parents=True)
        (self.mod_dir / "mod.ini").write_text(
            "Name=Cool Mod\nVersion=1.2.0\nGitHubRepo=someone/cool-mod\nGitHubAsset=cool-mod.zip\n",
            encoding="utf-8",
        )
        (self.mod_dir / "CoolMod.dll").write_text("v1.2", encoding="utf-8")

        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w") as zf:
            zf.writestr("CoolMod.dll", "v1.3")
        payload = buf.getvalue()
        self.session = FakeSession({ZIP_URL: payload})
        self.session.add_json(
            RELEASES_URL,
            [
                {
                    "tag_name": "1.3.0",
                    "assets": [{"name": "cool-mod.zip", "size": len(payload), "browser_download_url": ZIP_URL}],
                }
            ],
        )

        patches = [
            mock.patch.dict(os.environ, {"MODUPDATER_GAME_ROOT": str(self.root)}),
            mock.patch("modupdater.updater.cli.configure_logging"),
            mock.patch("modupdater.updater.update_service.build_session", return_value=self.session),
        ]
        for patcher in patches:
            patcher.start()
            self.addCleanup(patcher.stop)

    def _run(self, *argv: str) -> tuple[int, str]:
        out = io.StringIO()
        with contextlib.redirect_stdout(out):
            code = cli.main(list(argv))
        return code, out.getvalue()

    def test_check_reports_pending_update(self) -> None:
        code, out = self._run("check")
        self.assertEqual(code, cli.EXIT_PENDING)
        self.assertIn("Cool Mod: 1.2.0 -> 1.3.0", out)
        self.assertIsNotNone(load_update_state(self.root / "state").last_check())

    def test_check_apply_installs_release(self) -> None:
        code, out = self._run("check", "--apply")
        self.assertEqual(code, cli.EXIT_OK, out)
        self.assertEqual((self.mod_dir / "CoolMod.dll").read_text(encoding="utf-8"), "v1.3")
        self.assertEqual((self.mod_dir / "mod.version").read_text(encoding="utf-8").strip(), "1.3.0")
        self.assertEqual(self._run("verify")[0], cli.EXIT_OK)

        code, out = self._run("check")
        self.assertEqual(code, cli.EXIT_OK)
        self.assertIn("Mods are up to date.", out)

    def test_cancelled_install_exits_130(self) -> None:
        seen: list = []

        def cancelled(downloads, progress_callback=None, cancel=None):
            seen.append(cancel)
            raise UpdateCancelledError("Download cancelled.")

        with mock.patch.object(ModInstaller, "install_all", side_effect=cancelled):
            code, _ = self._run("check", "--apply")
        self.assertEqual(code, cli.EXIT_CANCELLED)
        self.assertIsInstance(seen[0], threading.Event)
        self.assertEqual((self.mod_dir / "CoolMod.dll").read_text(encoding="utf-8"), "v1.2")

    def test_check_skipped_when_not_due(self) -> None:
        state_dir = self.root / "state"
        state_dir.mkdir()
        (state_dir / STATE_FILE_NAME).write_text(
            json.dumps({"update_unit": "days", "update_frequency": 1, "last_mod_update_check_utc": "2999-01-01T00:00:00+00:00"}),
            encoding="utf-8",
        )
        code, _ = self._run("check", "--if-due")
        self.assertEqual(code, cli.EXIT_OK)
        self.assertEqual(self.session.calls, [])

    def test_check_errors_are_listed(self) -> None:
        (self.mod_dir / "mod.ini").write_text("Name=Cool Mod\nGitHubRepo=someone/cool-mod\n", encoding="utf-8")
        code, out = self._run("check")
        self.assertEqual(code, cli.EXIT_ERRORS)
        self.assertIn("[Cool Mod] GitHubRepo specified, but GitHubAsset is missing.", out)

    def test_generate_then_verify(self) -> None:
        code, out = self._run("generate-manifest", "--mod", "CoolMod")
        self.assertEqual(code, cli.EXIT_OK)
        self.assertIn("CoolMod: 2 file(s)", out)
        self.assertEqual(self._run("verify")[0], cli.EXIT_OK)

        (self.mod_dir / "CoolMod.dll").write_text("corrupt", encoding="utf-8")
        code, out = self._run("verify")
        self.assertEqual(code, cli.EXIT_PENDING)
        self.assertIn("modified  CoolMod.dll", out)

    def test_verify_without_manifests(self) -> None:
        code, out = self._run("verify")
        self.assertEqual(code, cli.EXIT_ERRORS)
        self.assertIn("cannot be verified", out)

    def test_verify_repair_apply_restores_release(self) -> None:
        self._run("generate-manifest", "--mod", "CoolMod")
        (self.mod_dir / "mod.version").write_text("1.3.0", encoding="utf-8")
        (self.mod_dir / "CoolMod.dll").unlink()
        code, out = self._run("verify", "--apply")
        self.assertEqual(code, cli.EXIT_OK, out)
        self.assertEqual((self.mod_dir / "CoolMod.dll").read_text(encoding="utf-8"), "v1.3")

    def test_generate_unknown_mod(self) -> None:
        code, out = self._run("generate-manifest", "--mod", "Nope")
        self.assertEqual(code, cli.EXIT_ERRORS)
        self.assertIn("no such mod folder", out)


if __name__ == "__main__":
    unittest.main()
