"""Command line interface for the qBittorrent file matcher.

Matches the files of one torrent against a directory, asks about ambiguous
matches, renames the torrent's files in qBittorrent and optionally skips
unmatched files and triggers a recheck.
"""

import os
from typing import Dict, List, Optional

import click
import requests
from rich.console import Console
from rich.prompt import Prompt
from rich.table import Table

import scanner
from matcher import (
    Match,
    MatchResult,
    ScanError,
    find_matches,
    generate_renames,
    pick_first,
    resolve_ambiguous,
    scan,
)
from scanner import format_size, logger

__version__ = "1.2.0"

console = Console()
err_console = Console(stderr=True)


def prompt_for_match(match: Match) -> Optional[int]:
    """Interactive resolver: list the candidates and ask which one to use."""
    t = match.torrent_entry
    console.print(f"\nMultiple matches found for: [bold]{t.name}[/bold] ({format_size(t.size)})")
    console.print("Select a file:")
    for i, c in enumerate(match.candidates, start=1):
        console.print(f"  [{i}] {c.path}", markup=False)
    console.print("  [0] Skip this file", markup=False)

    try:
        answer = Prompt.ask("Enter choice", console=console)
    except EOFError:
        err_console.print("[red]No input available, skipping...[/red]")
        return None
    try:
        choice = int(answer.strip())
    except ValueError:
        console.print("Invalid choice, skipping...")
        return None
    if choice < 0 or choice > len(match.candidates):
        console.print("Invalid choice, skipping...")
        return None
    if choice == 0:
        return None
    return choice - 1


def _print_renames(renames) -> None:
    table = Table(title=f"Renames to apply ({len(renames)})")
    table.add_column("Torrent path", style="cyan")
    table.add_column("New path", style="green")
    for r in renames:
        table.add_row(r.old_path, r.new_path)
    console.print(table)


def _print_unmatched(result: MatchResult) -> None:
    console.print(f"\nUnmatched files ({len(result.unmatched)}):")
    for t in result.unmatched:
        console.print(f"  {t.name} ({format_size(t.size)})", markup=False)
    console.print("\nUse --skip-unmatched to set priority to 0 for these files")


@click.group(help="Match torrent files with files on disk")
@click.version_option(__version__, "--version", "-v", prog_name=scanner.APP_NAME)
def main():
    """qBittorrent file matcher."""


@main.command("match")
@click.option("--url", default=None, help="qBittorrent WebUI URL (e.g. http://localhost:8080)")
@click.option("--username", "-u", default=None, help="qBittorrent username")
@click.option("--password", "-p", default=None, help="qBittorrent password")
@click.option("--hash", "torrent_hash", required=True, help="Torrent hash to match")
@click.option("--path", "scan_path", required=True, help="Directory path to scan for files")
@click.option("--same-ext/--no-same-ext", default=True, show_default=True,
              help="Only match files with the same extension")
@click.option("--skip-unmatched", is_flag=True, help="Set priority to 0 for unmatched files")
@click.option("--recheck", "-r", is_flag=True, help="Trigger torrent recheck after applying renames")
@click.option("--dry-run", is_flag=True, help="Show what would be done without making changes")
@click.option("--auto", "-a", "auto_select", is_flag=True, help="Auto-select first match (no prompts)")
@click.option("--save-config", is_flag=True, help="Save URL and credentials to the config file")
def match_cmd(url, username, password, torrent_hash, scan_path, same_ext, skip_unmatched,
              recheck, dry_run, auto_select, save_config):
    """Match torrent files with files on disk and rename them in qBittorrent.

    Connection settings come from the config file, then QBT_URL /
    QBT_USERNAME / QBT_PASSWORD, then the command line.
    """
    try:
        cfg = scanner.load_config()
    except scanner.ConfigError as e:
        err_console.print(f"[yellow]Warning: failed to load config file: {e}[/yellow]")
        cfg = {}
    scanner.apply_log_level(cfg)

    settings = scanner.connection_settings(cfg)
    if url:
        settings["Qbit_Url"] = url
    if username is not None:
        settings["Qbit_User"] = username
    if password is not None:
        settings["Qbit_Pass"] = password

    if save_config and settings["Qbit_Url"]:
        try:
            saved = scanner.save_config({**cfg, **settings})
            console.print(f"Config saved to {saved}")
        except OSError as e:
            err_console.print(f"[yellow]Warning: failed to save config: {e}[/yellow]")

    if not settings["Qbit_Url"]:
        raise click.ClickException("--url is required (or set in config file)")
    root = scanner.expand_path(scan_path)
    if not os.path.exists(root):
        raise click.ClickException(f"path does not exist: {scan_path}")

    try:
        execute_match(settings, torrent_hash, root, same_ext=same_ext, skip_unmatched=skip_unmatched,
                      recheck=recheck, dry_run=dry_run, auto_select=auto_select)
    except (requests.RequestException, RuntimeError, ScanError, scanner.ConfigError) as e:
        logger.debug("match failed", exc_info=True)
        raise click.ClickException(str(e)) from e


def execute_match(settings: Dict, torrent_hash: str, root: str, same_ext: bool = True,
                  skip_unmatched: bool = False, recheck: bool = False, dry_run: bool = False,
                  auto_select: bool = False) -> MatchResult:
    console.print(f"Connecting to qBittorrent at {settings['Qbit_Url']}...")
    qbit = scanner.login_qbit(settings)
    console.print("Connected!")

    try:
        console.print(f"Getting files for torrent {torrent_hash}...")
        torrent_entries = qbit.torrent_entries(torrent_hash)
        console.print(f"Found {len(torrent_entries)} files in torrent")

        console.print(f"Scanning directory {root}...")
        disk_entries = scan(root, on_error=lambda p, e: logger.debug("Skipping %s: %s", p, e))
        console.print(f"Found {len(disk_entries)} files on disk")

        console.print("Finding matches...")
        result = find_matches(torrent_entries, disk_entries, same_ext)

        if auto_select:
            resolve_ambiguous(result, pick_first)
        elif not dry_run:
            resolve_ambiguous(result, prompt_for_match)

        console.print(f"Matched: {result.matched_count}, Unmatched: {len(result.unmatched)}")

        renames = generate_renames(result.matches, root)
        renames_applied = False
        if not renames:
            console.print("No renames needed - all files already have correct paths")
        else:
            _print_renames(renames)
            if dry_run:
                console.print("\n[DRY RUN] No changes made", markup=False)
            else:
                console.print("\nApplying renames...")
                ok = failed = 0
                for r in renames:
                    try:
                        qbit.rename_file(torrent_hash, r.old_path, r.new_path)
                        ok += 1
                    except requests.RequestException as e:
                        logger.warning("Failed to rename %s: %s", r.old_path, e)
                        err_console.print(f"  Failed to rename {r.old_path}: {e}", markup=False)
                        failed += 1
                msg = f"Renamed {ok} files successfully"
                if failed:
                    msg += f", {failed} failed"
                console.print(msg)
                renames_applied = ok > 0

        if result.unmatched and skip_unmatched:
            _skip_unmatched(qbit, torrent_hash, result, dry_run)
        elif result.unmatched:
            _print_unmatched(result)

        if recheck and renames_applied and not dry_run:
            console.print("\nTriggering torrent recheck...")
            try:
                qbit.recheck(torrent_hash)
                console.print("Recheck started - qBittorrent will verify file integrity")
            except requests.RequestException as e:
                err_console.print(f"Failed to trigger recheck: {e}", markup=False)
    finally:
        qbit.disconnect()

    return result


def _skip_unmatched(qbit, torrent_hash: str, result: MatchResult, dry_run: bool) -> None:
    console.print(f"\nSkipping {len(result.unmatched)} unmatched files (setting priority to 0)...")
    if dry_run:
        console.print("[DRY RUN] Would skip:", markup=False)
        for t in result.unmatched:
            console.print(f"  {t.name}", markup=False)
        return
    ids: List[int] = [t.index for t in result.unmatched]
    try:
        qbit.set_file_priority(torrent_hash, ids, 0)
        console.print(f"Set priority to 0 for {len(ids)} files")
    except requests.RequestException as e:
        err_console.print(f"Failed to set priority: {e}", markup=False)


@main.group("config")
def config_group():
    """Inspect the saved configuration."""


@config_group.command("show")
def config_show():
    path = scanner.config_path()
    try:
        cfg = scanner.load_config(path)
    except scanner.ConfigError as e:
        raise click.ClickException(str(e)) from e
    console.print(f"Config file: {path}", markup=False)
    if not cfg:
        console.print("(no saved configuration)")
        return
    for key in scanner.CONFIG_KEYS:
        if key not in cfg:
            continue
        val = "********" if key == "Qbit_Pass" and cfg[key] else cfg[key]
        console.print(f"  {key}: {val}", markup=False)


@config_group.command("path")
def config_path_cmd():
    click.echo(str(scanner.config_path()))


@main.command("version")
def version_cmd():
    click.echo(f"{scanner.APP_NAME} v{__version__}")


if __name__ == "__main__":
    main()
