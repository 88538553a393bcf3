from __future__ import annotations

import argparse
import asyncio
import json
from typing import List, Optional

from jobsync.models import JobBucket, SyncStatus
from jobsync.settings import Settings
from jobsync.sync.client import JobSyncClient
from jobsync.telemetry.audit import read_audit_tail


def format_status(st: SyncStatus) -> str:
    conn = st.connection
    counts = " ".join(f"{b.value}={len(st.buckets.get(b, []))}" for b in JobBucket)
    poll = f"polling@{st.polling.current_interval_s:.1f}s" if st.polling.active else "push"
    line = f"[{conn.state.value}] {poll} {counts}"
    if conn.last_error:
        line += f" error={conn.last_error!r}"
    return line


async def watch(settings: Settings, *, job_id: Optional[str], duration_s: Optional[float]) -> int:
    client = JobSyncClient(settings)
    last: List[str] = [""]

    def _print(st: SyncStatus) -> None:
        line = format_status(st)
        if line != last[0]:
            print(line, flush=True)
            last[0] = line

    client.subscribe(_print)
    client.registry.subscribe(lambda _reg: _print(client.snapshot()))
    if job_id:
        client.connect_to_job(job_id)
    else:
        client.connect_to_global()
    try:
        if duration_s is None:
            await asyncio.Event().wait()
        else:
            await asyncio.sleep(duration_s)
    finally:
        client.close()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(prog="jobsync-watch", description="Follow download job status from a worker.")
    ap.add_argument("--job", default=None, help="follow a single job instead of the global stream")
    ap.add_argument("--duration-s", type=float, default=None, help="stop after this many seconds")
    ap.add_argument("--serve", action="store_true", help="run the HTTP status surface instead of printing")
    ap.add_argument("--host", default="127.0.0.1")
    ap.add_argument("--port", type=int, default=8090)
    ap.add_argument("--audit-tail", type=int, default=None, metavar="N", help="print the last N audit records and exit")
    args = ap.parse_args(argv)

    settings = Settings()

    if args.audit_tail is not None:
        for rec in read_audit_tail(settings.audit_log_path, max_lines=args.audit_tail):
            print(json.dumps(rec, ensure_ascii=False))
        return 0

    if args.serve:
        import uvicorn

        from jobsync.service.app import create_app

        uvicorn.run(create_app(settings), host=args.host, port=args.port)
        return 0

    try:
        return asyncio.run(watch(settings, job_id=args.job, duration_s=args.duration_s))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
