#!/usr/bin/env python3
"""
Journal Queue Service Entrypoint

Chooses the process to run from the SERVICE_TYPE environment variable.

SERVICE_TYPE values:
  - web (default): FastAPI app via gunicorn with uvicorn workers
  - worker: standalone worker pool
"""

import os
import sys

SERVICE_TYPE = os.environ.get("SERVICE_TYPE", "web")
PORT = os.environ.get("PORT", "8080")

print("=" * 50)
print(f"Journal queue service: {SERVICE_TYPE}")
print("=" * 50)

if SERVICE_TYPE == "web":
    print("Starting web server (gunicorn)...")
    cmd = [
        "gunicorn", "journalq.api.main:app",
        "--workers", os.environ.get("WEB_CONCURRENCY", "2"),
        "--worker-class", "uvicorn.workers.UvicornWorker",
        "--bind", f"0.0.0.0:{PORT}",
        "--timeout", "120",
        "--graceful-timeout", "60"
    ]
elif SERVICE_TYPE == "worker":
    print("Starting queue worker...")
    cmd = [sys.executable, "-m", "journalq.jobs.run_worker"]
else:
    print(f"ERROR: Unknown SERVICE_TYPE: {SERVICE_TYPE}")
    print("Valid values: web, worker")
    sys.exit(1)

print(f"Running: {' '.join(cmd)}")
print("=" * 50)

# Replace this process with the actual command
os.execvp(cmd[0], cmd)
