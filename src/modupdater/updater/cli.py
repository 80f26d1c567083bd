from __future__ import annotations

import argparse
import logging
import threading
from pathlib import Path
from typing import Any

from modupdater import __version__ as MODUPDATER_VERSION
from modupdater.common.config import AppPaths, RuntimeConfig
from modupdater.common.errors import ModUpdateError, UpdateCancelledError
from modupdater.common.logging_utils import configure_logging
from modupdater.common.manifest import changed_entries, generate_manifest, verify_mod
from modupdater.common.state import load_update_state, save_update_state
from modupdater.common.types import ModDownload, RepairItem, ResolutionResult
from modupdater.updater.mod_installer import InstallerProgress, ModInstaller
from modupdater.updater.mod_loader import load_mods
from modupdater.updater.update_service import ModUpdateService
from modupdater.updater.update_worker import PassState, UpdateCoordinator, UpdatePass


log = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERRORS = 1
EXIT_PENDING = 2
EXIT_CANCELLED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="modupdater", description="Mod update checker and repair tool")
    parser.add_argument("--version", action="version", version=f"%(prog)s {MODUPDATER_VERSION}")
    parser.add_argument("--mods-dir", type=Path, default=None, help="Mods folder (default: <game root>/mods).")
    parser.add_argument("--log-level", default="INFO", help="Log level.")
    sub = parser.add_subparsers(dest="command", required=True)

    check = sub.add_parser("check", help="Check mods for updates.")
    check.add_argument("--mod", action="append", dest="mods", metavar="KEY", help="Only check this mod folder.")
    check.add_argument("--force", action="store_true", help="Re-download mods even when they are current.")
    check.add_argument("--apply", action="store_true", help="Download and install the updates found.")
    check.add_argument("--if-due", action="store_true", help="Skip the check unless the update interval elapsed.")

    verify = sub.add_parser("verify", help="Verify installed mods against their manifests.")
    verify.add_argument("--mod", action="append", dest="mods", metavar="KEY", help="Only verify this mod folder.")
    verify.add_argument("--repair", action="store_true", help="Resolve replacements for damaged files.")
    verify.add_argument("--apply", action="store_true", help="Download and install the repairs (implies --repair).")

    generate = sub.add_parser("generate-manifest", help="Write a fresh mod.manifest for mod folders.")
    generate.add_argument("--mod", action="append", dest="mods", metavar="KEY", required=True)
    return parser


def _supervise(update_pass: UpdatePass) -> ResolutionResult | None:
    while True:
        try:
            return update_pass.wait()
        except KeyboardInterrupt:
            log.warning("Cancelling; the mod currently being checked will finish first.")
            update_pass.request_cancel()


def _print_result(result: ResolutionResult) -> None:
    if result.errors:
        print("The following errors occurred while checking for updates:")
        for line in result.errors:
            print(f"  {line}")
    for download in result.updates:
        print(_describe(download))


def _describe(download: ModDownload) -> str:
    if download.is_modular:
        fetch = len(download.files_to_fetch())
        remove = len(download.files_to_remove())
        return f"{download.name}: {fetch} file(s) to download, {remove} to remove ({download.version})"
    current = download.current_version or "unknown"
    return f"{download.name}: {current} -> {download.version}"


def _on_progress(progress: InstallerProgress) -> None:
    if progress.phase == "download-progress":
        return
    log.info("%s", progress.message)


def _install(paths: AppPaths, runtime: RuntimeConfig, service: ModUpdateService, result: ResolutionResult) -> int:
    installer = ModInstaller(paths, runtime, session=service.session)
    cancel = threading.Event()
    outcome: dict[str, Any] = {}

    def run() -> None:
        try:
            outcome["value"] = installer.install_all(result.updates, progress_callback=_on_progress, cancel=cancel)
        except BaseException as exc:
            outcome["error"] = exc

    worker = threading.Thread(target=run, daemon=True, name="modupdater-install")
    worker.start()
    while worker.is_alive():
        try:
            worker.join(0.1)
        except KeyboardInterrupt:
            log.warning("Cancelling; the file currently downloading will be discarded.")
            cancel.set()

    error = outcome.get("error")
    if isinstance(error, UpdateCancelledError):
        log.warning("Download cancelled.")
        return EXIT_CANCELLED
    if error is not None:
        raise error
    installed, errors = outcome["value"]
    for line in errors:
        print(f"  {line}")
    print(f"Installed {len(installed)} of {len(result.updates)} update(s).")
    return EXIT_ERRORS if errors or result.errors else EXIT_OK


def _finish_pass(update_pass: UpdatePass | None) -> tuple[int, ResolutionResult | None]:
    if update_pass is None:
        return EXIT_ERRORS, None
    result = _supervise(update_pass)
    if update_pass.state is PassState.CANCELLED:
        print("Cancelled.")
        return EXIT_CANCELLED, None
    if update_pass.state is PassState.FAILED or result is None:
        print(f"Update pass failed: {update_pass.error}")
        return EXIT_ERRORS, None
    return EXIT_OK, result


def _cmd_check(args: argparse.Namespace, paths: AppPaths, runtime: RuntimeConfig) -> int:
    state = load_update_state(paths.state_dir)
    if args.if_due and not state.is_check_due():
        log.info("Mod update check not due yet (last check %s).", state.last_mod_update_check_utc)
        return EXIT_OK

    mods = load_mods(paths.mods_dir, args.mods)
    service = ModUpdateService(runtime)
    coordinator = UpdateCoordinator(service)
    update_pass = coordinator.start_force(mods) if args.force else coordinator.start_check(mods)
    code, result = _finish_pass(update_pass)

    state.touch_update_time()
    save_update_state(paths.state_dir, state)
    if result is None:
        return code

    _print_result(result)
    if not result.updates:
        print("Mods are up to date.")
        return EXIT_ERRORS if result.errors else EXIT_OK
    if not args.apply:
        return EXIT_PENDING
    return _install(paths, runtime, service, result)


def _cmd_verify(args: argparse.Namespace, paths: AppPaths, runtime: RuntimeConfig) -> int:
    mods = [m for m in load_mods(paths.mods_dir, args.mods) if m.mod_dir is not None]
    mods = [m for m in mods if (m.mod_dir / runtime.manifest_file_name).is_file()]
    if not mods:
        print("None of the selected mods have manifests, so they cannot be verified.")
        return EXIT_ERRORS

    failed: list[RepairItem] = []
    for mod in mods:
        try:
            diff = verify_mod(mod.mod_dir, runtime.manifest_file_name)
        except (ModUpdateError, OSError) as exc:
            print(f"  [{mod.display_name}] verification failed: {exc}")
            continue
        item = RepairItem(mod=mod, diff=tuple(diff))
        if item.failed_count():
            failed.append(item)

    if not failed:
        print("All selected mods passed verification.")
        return EXIT_OK
    print("The following mods failed verification:")
    for item in failed:
        print(f"  {item.mod.display_name}: {item.failed_count()} file(s)")
        for entry in changed_entries(item.diff):
            print(f"    {entry.state.value:>9}  {entry.path}")
    if not (args.repair or args.apply):
        return EXIT_PENDING

    service = ModUpdateService(runtime)
    coordinator = UpdateCoordinator(service)
    code, result = _finish_pass(coordinator.start_repair(failed))
    if result is None:
        return code
    _print_result(result)
    if not args.apply or not result.updates:
        return EXIT_ERRORS if result.errors else EXIT_PENDING
    return _install(paths, runtime, service, result)


def _cmd_generate(args: argparse.Namespace, paths: AppPaths, runtime: RuntimeConfig) -> int:
    code = EXIT_OK
    for key in args.mods:
        mod_dir = paths.mod_dir(key)
        if not mod_dir.is_dir():
            print(f"  [{key}] no such mod folder")
            code = EXIT_ERRORS
            continue
        manifest, diff = generate_manifest(mod_dir, runtime.manifest_file_name)
        changes = changed_entries(diff)
        print(f"{key}: {len(manifest)} file(s), {len(changes)} change(s) since the previous manifest")
    return code


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    paths = AppPaths.default()
    if args.mods_dir is not None:
        paths = AppPaths.for_game_root(paths.game_root, mods_dir=args.mods_dir)
    paths.ensure_layout()
    configure_logging(paths.logs_dir, level=args.log_level)
    runtime = RuntimeConfig.from_env()

    if args.command == "check":
        return _cmd_check(args, paths, runtime)
    if args.command == "verify":
        return _cmd_verify(args, paths, runtime)
    return _cmd_generate(args, paths, runtime)
