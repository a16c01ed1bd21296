#!/usr/bin/env python3
"""GitLab -> database sync.

Examples:
  python scripts/run_gitlab_sync.py repositories
  python scripts/run_gitlab_sync.py issues --repo 1234 --full
  python scripts/run_gitlab_sync.py issues-all --assigned-only --async
  python scripts/run_gitlab_sync.py notes --repo 1234 --since 2025-01-01T00:00:00Z
  python scripts/run_gitlab_sync.py reports --project 7 --since-last
  python scripts/run_gitlab_sync.py purge-reports --project 7 --project 8
"""
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time
from datetime import datetime

# Ensure src is on path when running as script
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from pmsync.config import JobSettings, load_config
from pmsync.db.dao import parse_ts
from pmsync.errors import error_payload
from pmsync.jobs.service import ERROR, RUNNING, SyncJobService, job_payload
from pmsync.sync.sync_runner import SyncRunner
from pmsync.utils.logging import configure_logging

log = logging.getLogger("run_gitlab_sync")


def _ts(value: str) -> datetime:
    parsed = parse_ts(value)
    if parsed is None:
        raise argparse.ArgumentTypeError(f"invalid timestamp: {value!r}")
    return parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sync GitLab issues, milestones and time reports.")
    parser.add_argument("--config", default=None, help="YAML config path")
    parser.add_argument("--async", dest="run_async", action="store_true",
                        help="run as a background job and poll until it finishes")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("repositories", help="refresh repositories from the group, or one project")
    p.add_argument("--repo", type=int)
    p.add_argument("--project", type=int, help="local project to link --repo to")

    for name in ("issues", "milestones"):
        p = sub.add_parser(name)
        target = p.add_mutually_exclusive_group(required=True)
        target.add_argument("--repo", type=int)
        if name == "issues":
            target.add_argument("--project", type=int)
        p.add_argument("--full", action="store_true")
        p.add_argument("--since", type=_ts)

    p = sub.add_parser("issues-all")
    p.add_argument("--full", action="store_true")
    p.add_argument("--assigned-only", action="store_true")

    p = sub.add_parser("notes")
    p.add_argument("--repo", type=int, required=True)
    p.add_argument("--iid", type=int)
    p.add_argument("--since", type=_ts)

    for name in ("reports", "reports-all"):
        p = sub.add_parser(name)
        if name == "reports":
            p.add_argument("--project", type=int, required=True)
        p.add_argument("--from", dest="start", type=_ts)
        p.add_argument("--to", dest="end", type=_ts)
        p.add_argument("--since-last", action="store_true")

    p = sub.add_parser("purge-reports")
    p.add_argument("--project", type=int, action="append", help="repeatable; all reports when omitted")
    return parser


def dispatch(runner: SyncRunner, args: argparse.Namespace, progress=None):
    cmd = args.command
    if cmd == "repositories":
        return runner.repositories(args.repo, project_id=args.project)
    if cmd == "issues":
        if args.project is not None:
            return runner.issues_for_project(args.project, full=args.full, since=args.since)
        return runner.issues(args.repo, full=args.full, since=args.since)
    if cmd == "issues-all":
        return runner.issues_all(full=args.full, assigned_only=args.assigned_only, progress=progress)
    if cmd == "milestones":
        return runner.milestones(args.repo, full=args.full, since=args.since)
    if cmd == "notes":
        if args.iid is not None:
            return runner.notes_issue(args.repo, args.iid, since=args.since)
        return runner.notes(args.repo, since=args.since)
    if cmd == "reports":
        return runner.reports_project(args.project, start=args.start, end=args.end,
                                      since_last=args.since_last, progress=progress)
    if cmd == "reports-all":
        return runner.reports_all(start=args.start, end=args.end, since_last=args.since_last, progress=progress)
    if cmd == "purge-reports":
        return runner.purge_reports(args.project)
    raise ValueError(f"Unknown command: {cmd}")


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, default=str))


def main(argv=None) -> int:
    configure_logging()
    args = build_parser().parse_args(argv)
    cfg = load_config(args.config)
    runner = SyncRunner.from_config(cfg)

    if args.run_async:
        service = SyncJobService(runner, workers=JobSettings.from_config(cfg).workers)
        job_id = service.start_job(args.command, lambda progress: dispatch(runner, args, progress))
        log.info("Job started id=%s", job_id)
        snap = service.get_job(job_id)
        while snap.status == RUNNING:
            time.sleep(2)
            snap = service.get_job(job_id)
            if snap.total_repos:
                log.info("Job %s progress %s/%s current=%s",
                         job_id, snap.processed_repos, snap.total_repos, snap.current_repo_id)
        service.shutdown()
        _print(job_payload(snap))
        return 1 if snap.status == ERROR else 0

    try:
        result = dispatch(runner, args)
    except Exception as exc:
        _print({"error": error_payload(exc)})
        return 1
    _print(result.as_dict() if hasattr(result, "as_dict") else {"deleted": result})
    return 0


if __name__ == "__main__":
    sys.exit(main())
