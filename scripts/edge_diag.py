"""Edge worker diagnostics CLI."""

from __future__ import annotations

import argparse
import json
from pathlib import Path

from edgeworker.config import EdgeWorkerSettings
from edgeworker.sessions import SerializedState, SessionState
from edgeworker.storage import ChromaStore, ChromaUnavailableError, PersistenceIOError, SnapshotStore


def load_snapshot(settings: EdgeWorkerSettings, path: str | None = None) -> SerializedState:
    store = SnapshotStore(Path(path) if path else settings.state_path)
    try:
        snapshot = store.load()
    except PersistenceIOError as exc:
        print(f"Snapshot unreadable: {exc}")
        raise SystemExit(1)
    if snapshot is None:
        print(f"No snapshot at {store.path}")
        raise SystemExit(1)
    return snapshot


def load_archive(settings: EdgeWorkerSettings) -> ChromaStore:
    if settings.archive_path is None:
        print("Archive unavailable: EDGE_ARCHIVE_PATH is not set")
        raise SystemExit(1)
    return ChromaStore(settings.archive_path)


def _session_rows(snapshot: SerializedState, *, include_archived: bool = False) -> list[dict[str, object]]:
    records = list(snapshot.sessions.values())
    if include_archived:
        records.extend(snapshot.archived.values())
    return [
        {
            "session_id": record.id,
            "repository_id": record.repository_id,
            "issue": record.issue.identifier if record.issue else None,
            "state": record.state.value,
            "entries": len(record.entries),
            "updated_at": record.updated_at.isoformat(),
        }
        for record in records
    ]


def cmd_sessions(args: argparse.Namespace) -> None:
    snapshot = load_snapshot(EdgeWorkerSettings(), args.state)
    rows = _session_rows(snapshot, include_archived=args.all)
    if args.repository:
        rows = [row for row in rows if row["repository_id"] == args.repository]
    if args.json:
        print(json.dumps(rows, indent=2))
    else:
        for row in rows:
            print(f"{row['session_id']} [{row['state']}] {row['repository_id']} -> {row['issue']}")


def cmd_stalled(args: argparse.Namespace) -> None:
    snapshot = load_snapshot(EdgeWorkerSettings(), args.state)
    rows = [row for row in _session_rows(snapshot) if row["state"] == SessionState.STALLED.value]
    print(json.dumps(rows, indent=2))


def cmd_metrics(args: argparse.Namespace) -> None:
    snapshot = load_snapshot(EdgeWorkerSettings(), args.state)

    state_counts: dict[str, int] = {}
    repository_counts: dict[str, int] = {}
    for record in snapshot.sessions.values():
        state_counts[record.state.value] = state_counts.get(record.state.value, 0) + 1
        repository_counts[record.repository_id] = repository_counts.get(record.repository_id, 0) + 1

    metrics = {
        "saved_at": snapshot.saved_at.isoformat(),
        "sessions_total": len(snapshot.sessions),
        "archived_total": len(snapshot.archived),
        "state_counts": state_counts,
        "repository_counts": repository_counts,
        "stalled_total": state_counts.get(SessionState.STALLED.value, 0),
        "issues_routed": len(snapshot.issue_repositories),
    }

    print(json.dumps(metrics, indent=2))


def cmd_history(args: argparse.Namespace) -> None:
    store = load_archive(EdgeWorkerSettings())
    try:
        history = store.session_history(args.session_id, limit=args.limit)
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)

    payload = [
        {
            "sequence": activity.sequence,
            "kind": activity.kind,
            "state": activity.metadata.get("state"),
            "recorded_at": activity.recorded_at.isoformat(),
            "excerpt": activity.document[:200],
        }
        for activity in history
    ]
    print(json.dumps(payload, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Edge worker diagnostics")
    parser.add_argument("--state", help="Snapshot path (defaults to EDGE_STATE_PATH)")
    sub = parser.add_subparsers(dest="cmd")

    p_sessions = sub.add_parser("sessions", help="List sessions in the snapshot")
    p_sessions.add_argument("--json", action="store_true", help="Output JSON")
    p_sessions.add_argument("--all", action="store_true", help="Include archived sessions")
    p_sessions.add_argument("--repository")
    p_sessions.set_defaults(func=cmd_sessions)

    p_stalled = sub.add_parser("stalled", help="List sessions awaiting resumption")
    p_stalled.set_defaults(func=cmd_stalled)

    p_metrics = sub.add_parser("metrics", help="Show session counts by state and repository")
    p_metrics.set_defaults(func=cmd_metrics)

    p_history = sub.add_parser("history", help="Show archived activity for a session")
    p_history.add_argument("session_id")
    p_history.add_argument(
        "--limit",
        type=int,
        default=None,
        help="If provided, show only the latest N activities",
    )
    p_history.set_defaults(func=cmd_history)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
