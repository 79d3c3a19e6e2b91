#!/usr/bin/env python3
"""
Library upload example with progress tracking.

This example uploads a file with the session manager directly, without the
CLI. Large files are split into parts and uploaded concurrently; if the
upload is interrupted, run again with the printed session id to resume.
"""

import logging
import os
import sys
from pathlib import Path

from pdrive import (
    ProgressTracker,
    SessionStore,
    TransportClient,
    UploadProgress,
    UploadSessionManager,
    UploadSettings,
    UploadTarget,
)


def format_size(size_bytes: float) -> str:
    """Format byte size to human readable string."""
    for unit in ["B", "KB", "MB", "GB"]:
        if size_bytes < 1024:
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024
    return f"{size_bytes:.1f} TB"


def main():
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    # Get configuration from environment
    endpoint = os.environ.get("PDRIVE_ENDPOINT", "http://localhost:9000")
    token = os.environ.get("PDRIVE_TOKEN", "")
    bucket = os.environ.get("PDRIVE_BUCKET", "uploads")

    if len(sys.argv) < 2:
        print("Usage: python upload_file.py <file_path> [session_id]")
        print("\nEnvironment variables:")
        print("  PDRIVE_ENDPOINT - Storage endpoint (default: http://localhost:9000)")
        print("  PDRIVE_TOKEN    - Bearer token")
        print("  PDRIVE_BUCKET   - Bucket name (default: uploads)")
        sys.exit(1)

    file_path = Path(sys.argv[1])
    resume_id = sys.argv[2] if len(sys.argv) > 2 else None
    if not file_path.exists():
        print(f"Error: File not found: {file_path}")
        sys.exit(1)

    target = UploadTarget(endpoint=endpoint, token=token, bucket=bucket, object_key=file_path.name)

    def on_progress(progress: UploadProgress):
        bar_width = 30
        filled = int(bar_width * progress.percentage / 100)
        bar = "=" * filled + "-" * (bar_width - filled)
        speed = f" {format_size(progress.speed_bps)}/s" if progress.speed_bps else ""
        print(
            f"\r[{bar}] {progress.percentage:.1f}% "
            f"(part {progress.chunks_completed}/{progress.total_chunks}){speed}",
            end="",
            flush=True,
        )

    store = SessionStore(Path.home() / ".pdrive-example" / "sessions")
    settings = UploadSettings(concurrency=4)

    with TransportClient.for_target(target) as transport:
        manager = UploadSessionManager(
            transport, store, settings, reporter=ProgressTracker(on_progress)
        )
        if resume_id:
            outcome = manager.resume_upload(resume_id, file_path)
        else:
            outcome = manager.start_upload(file_path, target)

    print("\n")
    if outcome.succeeded:
        print("Upload successful!")
        print(f"  Object: {endpoint}/{bucket}/{outcome.descriptor.key}")
        print(f"  Size: {format_size(outcome.descriptor.size)}")
        print(f"  SHA-256: {outcome.digest}")
    elif outcome.resumable:
        print(f"Upload interrupted: {outcome.error_message}")
        print(f"  Resume with: python upload_file.py {file_path} {outcome.session_id}")
    else:
        print(f"Upload {outcome.state.value}: {outcome.error_message}")
        sys.exit(1)


if __name__ == "__main__":
    main()
