#!/usr/bin/env python3
"""
Container entry point: run the release phase, then exec gunicorn.

Environment: PORT (default 8080), WEB_CONCURRENCY (default 2),
SKIP_RELEASE=1 to start without migrating.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def gunicorn_argv(environ: dict | None = None) -> list[str]:
    environ = os.environ if environ is None else environ
    port = (environ.get("PORT") or "8080").strip()
    workers = (environ.get("WEB_CONCURRENCY") or "2").strip()
    if not port.isdigit() or not 1 <= int(port) <= 65535:
        raise ValueError(f"Invalid PORT value {port!r}")
    if not workers.isdigit() or int(workers) < 1:
        raise ValueError(f"Invalid WEB_CONCURRENCY value {workers!r}")
    return [
        "gunicorn",
        "app.wsgi:app",
        "--bind", f"0.0.0.0:{port}",
        "--workers", workers,
        "--timeout", "60",
        "--preload",
        "--access-logfile", "-",
        "--error-logfile", "-",
    ]


def main() -> None:
    try:
        argv = gunicorn_argv()
    except ValueError as e:
        print(f"ERROR: {e}", flush=True)
        sys.exit(1)

    if (os.environ.get("SKIP_RELEASE") or "").strip() != "1":
        from scripts.release import run_release

        try:
            run_release()
        except Exception as e:
            print(f"Release failed: {e}", flush=True)
            sys.exit(1)

    # gunicorn replaces this process so it receives signals directly.
    os.execvp(argv[0], argv)


if __name__ == "__main__":
    main()
