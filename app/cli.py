import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from app.backend.process import collect_image_paths, export_records, load_uploads, process_uploads
from medscan.logger import set_level
from medscan.pipeline import AppState, SyncNotConfigured, build_app_state


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Extract patient data from label / whiteboard photos and manage the record log."
    )
    parser.add_argument(
        "--storage-dir",
        default=None,
        help="Directory holding the persisted record log (default: STORAGE_DIR setting).",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    sub = parser.add_subparsers(dest="command", required=True)

    scan = sub.add_parser("scan", help="Process images into new records.")
    scan.add_argument("inputs", nargs="+", help="Image files or directories.")

    listing = sub.add_parser("list", help="List records, newest first.")
    listing.add_argument("--search", default=None, help="Filter by name, identifier, UHID or doctor.")

    delete = sub.add_parser("delete", help="Delete a record by id.")
    delete.add_argument("record_id")
    delete.add_argument("--yes", action="store_true", help="Confirm deletion without prompting.")

    sync = sub.add_parser("sync", help="Push records to the configured spreadsheet webhook.")
    sync.add_argument("record_ids", nargs="*", help="Record ids (default: all unsynced).")
    sync.add_argument("--test", action="store_true", help="Send a single test row instead.")

    config = sub.add_parser("config", help="Show or change sync settings.")
    config.add_argument("--webhook-url", default=None)
    config.add_argument("--auto-sync", dest="auto_sync", action="store_true", default=None)
    config.add_argument("--no-auto-sync", dest="auto_sync", action="store_false")

    export = sub.add_parser("export", help="Export records to a file.")
    export.add_argument("--format", choices=["json", "csv"], default="csv")
    export.add_argument("--output-dir", default=".")
    export.add_argument("--search", default=None)

    return parser.parse_args(argv)


def _cmd_scan(state: AppState, args: argparse.Namespace) -> int:
    paths, skipped = collect_image_paths(args.inputs)
    for raw in skipped:
        print(f"[warn] input not found or not an image: {raw}")
    uploads, rejected = load_uploads(paths)
    for raw in rejected:
        print(f"[warn] image too large: {raw}")
    if not uploads:
        print("[error] no valid input images found.")
        return 1

    result = process_uploads(state, uploads)
    for entry in result["entries"]:
        line = f"{entry['status']:<10} {entry['filename']}"
        if entry.get("error"):
            line += f"  ({entry['error']})"
        print(line)
    if result["warning"]:
        print(f"[warn] {result['warning']}")
    return 0 if result["completed"] else 1


def _cmd_list(state: AppState, args: argparse.Namespace) -> int:
    records = state.search(args.search)
    for r in records:
        flag = "synced" if r.synced else "local"
        print(f"{r.id}  {r.timestamp}  {r.uhid or '-':<10} {r.patient_name or '-'}  [{r.attending_doctor or '-'}]  {flag}")
    stats = state.ledger.stats()
    print(f"{len(records)} shown | total={stats['total']} today={stats['today']} unsynced={stats['unsynced']}")
    return 0


def _cmd_delete(state: AppState, args: argparse.Namespace) -> int:
    def confirm() -> bool:
        if args.yes:
            return True
        answer = input(f"Are you sure you want to delete record {args.record_id}? [y/N] ")
        return answer.strip().lower() in ("y", "yes")

    if state.delete_record(args.record_id, confirm):
        print(f"Deleted {args.record_id}")
        return 0
    print("Nothing deleted.")
    return 1


def _cmd_sync(state: AppState, args: argparse.Namespace) -> int:
    try:
        if args.test:
            outcome = state.test_sync_connection()
        else:
            outcome = state.sync_records(args.record_ids or None)
    except SyncNotConfigured as exc:
        print(f"[error] {exc}. Run: config --webhook-url <Web App URL>")
        return 2
    print(f"Sync outcome: {outcome.value}")
    return 0 if outcome.delivered else 1


def _cmd_config(state: AppState, args: argparse.Namespace) -> int:
    if args.webhook_url is not None or args.auto_sync is not None:
        try:
            state.update_sync_config(webhook_url=args.webhook_url, auto_sync=args.auto_sync)
        except ValueError as exc:
            print(f"[error] {exc}")
            return 2
    cfg = state.sync_config
    print("webhook_url:", cfg.webhook_url or "(not set)")
    print("auto_sync:", cfg.auto_sync)
    print("configured:", state.is_sync_configured())
    return 0


def _cmd_export(state: AppState, args: argparse.Namespace) -> int:
    path = export_records(state, args.format, args.output_dir, search=args.search)
    if path is None:
        print("No records to export.")
        return 0
    print("Export:", path)
    return 0


COMMANDS = {
    "scan": _cmd_scan,
    "list": _cmd_list,
    "delete": _cmd_delete,
    "sync": _cmd_sync,
    "config": _cmd_config,
    "export": _cmd_export,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    if args.verbose:
        set_level(logging.DEBUG)
    state = build_app_state(args.storage_dir, with_extractor=args.command == "scan")
    return COMMANDS[args.command](state, args)


if __name__ == "__main__":
    raise SystemExit(main())
