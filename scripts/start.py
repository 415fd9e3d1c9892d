#!/usr/bin/env python3
"""
Container entrypoint: release (migrate + seed), then hand the process over to gunicorn.

Environment:
  PORT             listen port (default 8080)
  WEB_CONCURRENCY  gunicorn workers (default 2)
  SKIP_RELEASE     "1" to start serving without migrating
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _port() -> str:
    raw = (os.environ.get("PORT") or "8080").strip()
    if not raw.isdigit() or not 1 <= int(raw) <= 65535:
        print(f"[start] invalid PORT {raw!r}; expected 1-65535", flush=True)
        sys.exit(1)
    return raw


def gunicorn_argv(port: str, workers: str) -> list[str]:
    return [
        "gunicorn",
        "app.wsgi:app",
        "--bind", f"0.0.0.0:{port}",
        "--workers", workers,
        # Remit and dispatch hold row locks; keep slow requests from piling up.
        "--timeout", "60",
        "--preload",
        "--access-logfile", "-",
        "--error-logfile", "-",
    ]


def main() -> None:
    port = _port()
    workers = (os.environ.get("WEB_CONCURRENCY") or "2").strip()

    if (os.environ.get("SKIP_RELEASE") or "").strip() != "1":
        from scripts.release import run_release

        try:
            run_release()
        except Exception as e:
            print(f"[start] release failed: {e}", flush=True)
            sys.exit(1)

    print(f"[start] gunicorn on :{port} with {workers} workers", flush=True)
    os.execvp("gunicorn", gunicorn_argv(port, workers))


if __name__ == "__main__":
    main()
