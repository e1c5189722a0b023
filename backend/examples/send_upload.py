"""Example client that uploads a visitor export and waits for it to finish."""
from __future__ import annotations

import argparse
import os
import time
from pathlib import Path

import requests

TERMINAL_STATUSES = ("completed", "error")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Upload a visitor event CSV")
    parser.add_argument("csv_path", type=Path, help="CSV export to upload")
    parser.add_argument(
        "--api-url",
        default=os.environ.get("INGESTION_API_URL", "http://127.0.0.1:8000"),
        help="Ingestion API base URL (default: %(default)s or INGESTION_API_URL)",
    )
    parser.add_argument(
        "--tenant-id",
        default=os.environ.get("INGESTION_TENANT_ID"),
        help="Tenant that owns the upload (INGESTION_TENANT_ID)",
    )
    parser.add_argument("--poll-interval", type=float, default=2.0, help="Seconds between status checks")
    parser.add_argument("--timeout", type=float, default=600.0, help="Give up after this many seconds")
    args = parser.parse_args()
    if not args.tenant_id:
        parser.error("A tenant must be supplied via --tenant-id or INGESTION_TENANT_ID")
    return args


def main() -> None:
    args = parse_args()
    with args.csv_path.open("rb") as handle:
        response = requests.post(
            f"{args.api_url}/uploads",
            data={"tenant_id": args.tenant_id},
            files={"file": (args.csv_path.name, handle, "text/csv")},
            timeout=30,
        )
    response.raise_for_status()
    upload = response.json()
    print("Upload accepted:", upload["id"])

    deadline = time.monotonic() + args.timeout
    while upload["status"] not in TERMINAL_STATUSES:
        if time.monotonic() > deadline:
            raise SystemExit(f"Upload {upload['id']} still {upload['status']} after {args.timeout}s")
        time.sleep(args.poll_interval)
        status_response = requests.get(f"{args.api_url}/uploads/{upload['id']}", timeout=10)
        status_response.raise_for_status()
        upload = status_response.json()

    if upload["status"] == "error":
        raise SystemExit(f"Upload failed: {upload['error']}")
    print(f"Upload completed with {upload['row_count']} events")

    dashboard = requests.get(f"{args.api_url}/dashboard", params={"tenant_id": args.tenant_id}, timeout=10)
    dashboard.raise_for_status()
    print("Dashboard:", dashboard.json()["metrics"])


if __name__ == "__main__":
    main()
