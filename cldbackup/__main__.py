"""main module"""

import argparse
import asyncio
import os
import sys

from cldbackup.credentials import (
    Credentials,
    FileSecretStore,
    credentials_from_env,
)
from cldbackup.data_processing import LIMIT, MAX_CONCURRENT_DOWNLOADS, MAX_RETRIES
from cldbackup.downloader import print_summary, run_backup
from cldbackup.errors import BackupError
from cldbackup.store import (
    DownloadState,
    PhotoQuery,
    aggregate_statistics,
    compact,
    export_to_json,
    list_sessions,
    refresh_download_state,
    search_photos,
)
from cldbackup.store_utils.db import DEFAULT_DB_NAME
from cldbackup.user_input import choices, get_user_folder, prompt_credentials
from cldbackup.utils import default_download_dir, format_size

COMMANDS = ("backup", "scan", "stats", "sessions", "search", "export", "verify", "compact", "login")


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse tree; every subcommand shares the account/location flags."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--cloud-name", help="Cloudinary cloud name")
    common.add_argument("--api-key", help="Cloudinary API key")
    common.add_argument("--api-secret", help="Cloudinary API secret")
    common.add_argument("--dest", help="backup folder (default ./downloads/<cloud name>)")
    common.add_argument("--db", help="index file (default <dest>/photos.db)")
    common.add_argument(
        "--secrets", help="credentials file (default ~/.config/cldbackup/credentials.json)"
    )

    parser = argparse.ArgumentParser(
        prog="cldbackup",
        description="Back up a Cloudinary cloud to a local folder and SQLite index.",
    )
    sub = parser.add_subparsers(dest="command")

    for name, help_text in (("backup", "list and download new or changed assets"),
                            ("scan", "index the listing without downloading")):
        cmd = sub.add_parser(name, parents=[common], help=help_text)
        cmd.add_argument("--concurrency", type=int, default=MAX_CONCURRENT_DOWNLOADS)
        cmd.add_argument("--retries", type=int, default=MAX_RETRIES)
        cmd.add_argument("--limit", type=int, default=LIMIT, help="max downloads this run")
        cmd.add_argument(
            "--export-metadata",
            action="store_true",
            help="also write <dest>/metadata.json with the listing",
        )
        cmd.add_argument("--no-save", action="store_true", help="do not remember credentials")
        cmd.add_argument("--quiet", action="store_true", help="no progress bar")

    sub.add_parser("stats", parents=[common], help="show download statistics")

    sessions = sub.add_parser("sessions", parents=[common], help="list backup sessions")
    sessions.add_argument("--limit", type=int, default=20)

    search = sub.add_parser("search", parents=[common], help="search indexed photos")
    search.add_argument("--tag", action="append", default=[], dest="tags")
    search.add_argument("--format")
    search.add_argument("--from", dest="date_from")
    search.add_argument("--to", dest="date_to")
    search.add_argument("--min-bytes", type=int)
    search.add_argument("--max-bytes", type=int)
    search.add_argument("--state", choices=[s.value for s in DownloadState])
    search.add_argument("--limit", type=int, default=50)

    export = sub.add_parser("export", parents=[common], help="export the index to JSON")
    export.add_argument("output", help="target JSON file")

    sub.add_parser("verify", parents=[common], help="re-check downloaded files on disk")
    sub.add_parser("compact", parents=[common], help="VACUUM the index file")

    login = sub.add_parser("login", parents=[common], help="save credentials")
    login.add_argument("--no-save", action="store_true", help=argparse.SUPPRESS)

    return parser


def parse_args(argv=None) -> argparse.Namespace:
    """Parse CLI args; ``backup`` is implied when no subcommand is given."""
    argv = list(sys.argv[1:] if argv is None else argv)
    if not argv or (argv[0] not in COMMANDS and argv[0] not in ("-h", "--help")):
        argv = ["backup", *argv]
    return build_parser().parse_args(argv)


def resolve_credentials(args: argparse.Namespace, store: FileSecretStore) -> Credentials:
    """
    Pick credentials from flags, environment, the secret store or a prompt,
    in that order. Flag credentials are saved unless --no-save; prompted
    ones only after the user confirms.
    """
    if args.cloud_name and args.api_key and args.api_secret:
        creds = Credentials(args.cloud_name, args.api_key, args.api_secret)
    else:
        env = credentials_from_env()
        if env and (not args.cloud_name or env.cloud_name == args.cloud_name):
            return env
        tokens = store.tokens()
        token = args.cloud_name or (tokens[0] if tokens else None)
        saved = store.load(token) if token else None
        if saved is not None:
            return saved
        creds = prompt_credentials(args.cloud_name)
        if not getattr(args, "no_save", False) and not choices(
            "[?] Remember these credentials? (y/N): "
        ):
            return creds

    if not getattr(args, "no_save", False):
        store.save(creds)
        print(f"[*] Credentials saved for '{creds.cloud_name}' in {store.path}")
    return creds


def resolve_cloud_name(args: argparse.Namespace, store: FileSecretStore) -> str | None:
    if args.cloud_name:
        return args.cloud_name
    env_cloud = os.environ.get("CLOUDINARY_CLOUD_NAME", "").strip()
    if env_cloud:
        return env_cloud
    tokens = store.tokens()
    return tokens[0] if tokens else None


def resolve_db_path(args: argparse.Namespace, cloud_name: str | None) -> str | None:
    """Index file for read-only commands; None lets the store pick its default."""
    if args.db:
        return os.path.abspath(args.db)
    if args.dest:
        return os.path.join(os.path.abspath(args.dest), DEFAULT_DB_NAME)
    if cloud_name:
        return os.path.join(default_download_dir(cloud_name), DEFAULT_DB_NAME)
    return None


def cmd_backup(args: argparse.Namespace, store: FileSecretStore) -> int:
    creds = resolve_credentials(args, store)
    if args.dest:
        dest = os.path.abspath(args.dest)
    elif sys.stdin.isatty():
        dest = get_user_folder(default_name=creds.cloud_name)
    else:
        dest = default_download_dir(creds.cloud_name)
    print(f"[^] Backup folder: {dest}")

    try:
        report = asyncio.run(
            run_backup(
                creds,
                dest,
                db_path=args.db,
                concurrency=args.concurrency,
                max_retries=args.retries,
                limit=args.limit,
                scan_only=args.command == "scan",
                metadata_path=(
                    os.path.join(dest, "metadata.json") if args.export_metadata else None
                ),
                show_progress=not args.quiet,
            )
        )
    except BackupError as error:
        print(f"\n[!] Backup failed: {error}")
        return 1

    print_summary(report)
    if args.command == "scan":
        print(f"[^] Indexed {report.listed} resource(s), {report.skipped} already backed up.")
    return 0


def cmd_stats(db_path: str | None) -> int:
    stats = aggregate_statistics(db_path=db_path)
    print(f"[^] Photos:     {stats.total_photos} ({format_size(stats.total_bytes)})")
    print(
        f"[^] Downloaded: {stats.downloaded_photos} "
        f"({format_size(stats.downloaded_bytes)}, {stats.download_percentage:.1f}%)"
    )
    print(f"[^] Failed:     {stats.failed_photos}")
    return 0


def cmd_sessions(db_path: str | None, limit: int) -> int:
    sessions = list_sessions(limit=limit, db_path=db_path)
    if not sessions:
        print("[*] No backup sessions yet.")
        return 0
    for s in sessions:
        state = "running (resume available)" if s.is_interrupted else s.status.value
        print(
            f"#{s.id} {s.session_type.value:<11} {s.started_at} [{state}] "
            f"{s.successful_photos}/{s.total_photos} ok, {s.failed_photos} failed, "
            f"{format_size(s.total_bytes)}"
        )
        if s.notes:
            print(f"    {s.notes}")
    return 0


def cmd_search(args: argparse.Namespace, db_path: str | None) -> int:
    query = PhotoQuery(
        tags=tuple(args.tags),
        format=args.format,
        date_from=args.date_from,
        date_to=args.date_to,
        min_bytes=args.min_bytes,
        max_bytes=args.max_bytes,
        state=DownloadState(args.state) if args.state else None,
        limit=args.limit,
    )
    photos = search_photos(query, db_path=db_path)
    for p in photos:
        print(
            f"{p.public_id} v{p.version} {p.format} {format_size(p.bytes)} "
            f"[{p.state.value}] {p.local_path or ''}"
        )
    print(f"[^] {len(photos)} match(es).")
    return 0


def main(argv=None) -> int:
    """
    The main function that runs the program.
    """
    args = parse_args(argv)
    store = FileSecretStore(args.secrets)

    try:
        if args.command in ("backup", "scan"):
            return cmd_backup(args, store)
        if args.command == "login":
            creds = resolve_credentials(args, store)
            print(f"[^] Ready to back up '{creds.cloud_name}'.")
            return 0

        db_path = resolve_db_path(args, resolve_cloud_name(args, store))
        if args.command == "stats":
            return cmd_stats(db_path)
        if args.command == "sessions":
            return cmd_sessions(db_path, args.limit)
        if args.command == "search":
            return cmd_search(args, db_path)
        if args.command == "export":
            count = export_to_json(args.output, db_path=db_path)
            print(f"[^] Exported {count} photo(s) to {args.output}")
            return 0
        if args.command == "verify":
            summary = refresh_download_state(db_path=db_path)
            print(
                f"[^] Checked {summary.checked_items}: {summary.downloaded_items} present, "
                f"{summary.missing_items} missing (re-queued)."
            )
            return 0
        if args.command == "compact":
            compact(db_path=db_path)
            print("[^] Index compacted.")
            return 0
    except BackupError as error:
        print(f"[!] Error: {error}")
        return 1
    except KeyboardInterrupt:
        print("\n[!] Exiting...")
        return 130
    return 2


if __name__ == "__main__":
    sys.exit(main())
