"""Command-line front end for save-sync."""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import TYPE_CHECKING

from savesync.app import configure_logging, open_services
from savesync.config import load_settings
from savesync.exceptions import SaveSyncError
from savesync.services.backup_service import RunStatus
from savesync.services.datetime_service import format_iso
from savesync.services.manifest_service import list_manifests, load_manifest
from savesync.services.restore_service import restore_save
from savesync.services.save_service import register_save

if TYPE_CHECKING:
    from savesync.app import Services
    from savesync.models.save import Save
    from savesync.services.backup_service import RunReport
    from savesync.services.diff_service import DiffResult


class CliError(Exception):
    """A user-facing error that ends the command with exit status 1."""


async def _resolve_save(services: Services, args: argparse.Namespace) -> Save:
    if args.friendly:
        save = await services.catalog.find_save(friendly_name=args.friendly)
        if save is None:
            raise CliError(f'There is no save labelled "{args.friendly}".')
        return save
    if not args.path:
        raise CliError("Either a save PATH or --friendly NAME is required.")
    path = Path(args.path).expanduser().resolve()
    save = await services.catalog.find_save(save_path=path)
    if save is None:
        raise CliError(f"{path} is not a tracked save path.")
    return save


def _display(path: str) -> str:
    """Escape bytes that do not decode as UTF-8 so any file name can be printed."""
    return path.encode("utf-8", "backslashreplace").decode("utf-8")


def _print_diff(diff: DiffResult) -> None:
    for prefix, paths in (
        ("A", diff.added),
        ("M", diff.modified),
        ("D", diff.deleted),
        ("?", diff.unscannable),
    ):
        for path in paths:
            print(f"  {prefix} {_display(path)}")


def _print_report(name: str, report: RunReport) -> None:
    if report.status is RunStatus.FAILED:
        print(f"{name}: failed ({report.failure_kind}: {report.failure_message})")
        return
    changed = report.commit.total if report.commit else 0
    print(f"{name}: {report.status} ({changed} change(s), {len(report.warnings)} warning(s))")
    for outcome in report.warnings:
        print(f"  ! {_display(outcome.path)}: {outcome.error_kind}: {outcome.message}")
    for outcome in report.skipped:
        print(f"  - {_display(outcome.path)}: skipped ({outcome.message})")


async def _cmd_add(services: Services, args: argparse.Namespace) -> int:
    user = await services.catalog.ensure_user(services.settings.local_username)
    save = await register_save(
        services.catalog, services.settings, user, Path(args.path).expanduser(), args.friendly
    )
    print(f'Tracking "{save.friendly_name}" ({save.save_path}) as save {save.id}')
    return 0


async def _cmd_list(services: Services, args: argparse.Namespace) -> int:
    user = await services.catalog.ensure_user(services.settings.local_username)
    saves = await services.catalog.list_saves(user.id)
    if not saves:
        print("No saves are tracked yet.")
        return 0
    for save in saves:
        print(f"{save.id:>4}  {save.friendly_name}  {save.save_path}")
    return 0


async def _cmd_info(services: Services, args: argparse.Namespace) -> int:
    save = await _resolve_save(services, args)
    files = await services.catalog.list_files(save.id)
    print(f"Name:          {save.friendly_name}")
    print(f"Save path:     {save.save_path}")
    print(f"Backup path:   {save.backup_path}")
    print(f"Files tracked: {len(files)}")
    print(f"Runs recorded: {len(list_manifests(save.backup_path))}")
    print(f"Created:       {format_iso(save.created_at)}")
    print(f"Modified:      {format_iso(save.modified_at)}")
    if args.delta:
        diff = await services.orchestrator.status(save.id)
        print("Changes since last backup:" if not diff.is_clean else "No changes since last backup.")
        _print_diff(diff)
    return 0


async def _cmd_update(services: Services, args: argparse.Namespace) -> int:
    if args.friendly or args.path:
        saves = [await _resolve_save(services, args)]
    else:
        user = await services.catalog.ensure_user(services.settings.local_username)
        saves = await services.catalog.list_saves(user.id)
    reports = await services.orchestrator.run_all(save.id for save in saves)
    for save, report in zip(saves, reports, strict=True):
        _print_report(save.friendly_name, report)
    return 1 if any(r.status is RunStatus.FAILED for r in reports) else 0


async def _cmd_verify(services: Services, args: argparse.Namespace) -> int:
    save = await _resolve_save(services, args)
    diff = await services.orchestrator.status(save.id)
    if diff.is_clean:
        print(f"{save.friendly_name}: backup is up to date")
        return 0
    print(f"{save.friendly_name}: backup is out of date")
    _print_diff(diff)
    return 1


async def _cmd_restore(services: Services, args: argparse.Namespace) -> int:
    save = await _resolve_save(services, args)
    manifest = None
    if args.manifest:
        try:
            manifest = load_manifest(args.manifest)
        except (OSError, ValueError) as exc:
            raise CliError(f"Cannot read manifest {args.manifest}: {exc}") from exc
    report = await restore_save(
        services.catalog,
        services.store,
        save,
        Path(args.target).expanduser(),
        overwrite=args.overwrite,
        manifest=manifest,
    )
    print(
        f"Restored {len(report.restored)} file(s) into {report.target_dir} "
        f"({len(report.skipped)} skipped, {len(report.failed)} failed)"
    )
    for path, message in report.failed.items():
        print(f"  ! {_display(path)}: {message}")
    return 0 if report.ok else 1


_COMMANDS = {
    "add": _cmd_add,
    "list": _cmd_list,
    "info": _cmd_info,
    "update": _cmd_update,
    "verify": _cmd_verify,
    "restore": _cmd_restore,
}


def _add_selector(parser: argparse.ArgumentParser, help_path: str) -> None:
    parser.add_argument(
        "-f", "--friendly", metavar="NAME", help="The friendly name of the save"
    )
    parser.add_argument("path", nargs="?", help=help_path)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="save-sync",
        description="Back up save directories incrementally",
    )
    parser.add_argument("--config", "-c", type=Path, help="Path to a settings.toml file")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    add = subparsers.add_parser("add", help="Track a new save directory")
    add.add_argument("-f", "--friendly", metavar="NAME", help="The friendly name of the save")
    add.add_argument("path", help="The directory to back up")

    subparsers.add_parser("list", help="List every tracked save")

    info = subparsers.add_parser("info", help="Show information about a save")
    _add_selector(info, "The path of the save")
    info.add_argument(
        "-d", "--delta", action="store_true", help="Show what changed since the last backup"
    )

    update = subparsers.add_parser("update", help="Back up one save, or all saves")
    _add_selector(update, "The path of the save (default: every save)")

    verify = subparsers.add_parser("verify", help="Check that a save's backup is up to date")
    _add_selector(verify, "The path of the save")

    restore = subparsers.add_parser("restore", help="Restore a save's files")
    _add_selector(restore, "The path of the save")
    restore.add_argument("--target", "-t", required=True, help="Directory to restore into")
    restore.add_argument(
        "--overwrite", action="store_true", help="Replace files that already exist"
    )
    restore.add_argument(
        "--manifest", "-m", type=Path, help="Restore the state recorded in this run manifest"
    )
    return parser


async def run_command(args: argparse.Namespace) -> int:
    """Execute a parsed command and return its exit status."""
    overrides = {"debug": True} if args.debug else {}
    settings = load_settings(args.config, **overrides)
    async with open_services(settings) as services:
        return await _COMMANDS[args.command](services, args)


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    args = build_parser().parse_args(argv)
    configure_logging(args.debug)
    try:
        code = asyncio.run(run_command(args))
    except (CliError, SaveSyncError, ValueError) as exc:
        print(f"Error: {exc}")
        sys.exit(1)
    if code:
        sys.exit(code)


if __name__ == "__main__":
    main()
