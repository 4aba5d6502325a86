#!/usr/bin/env python3
"""
Production entry point: release phase, then gunicorn in place of this process.

Environment:
    PORT              bind port (default 8080)
    WEB_CONCURRENCY   gunicorn workers (default 2)
    GUNICORN_TIMEOUT  worker timeout in seconds (default 120)
    SKIP_RELEASE      "1" to skip migrations + seed (e.g. when a separate release job ran them)
"""

from __future__ import annotations

import os
import sys
from collections.abc import Mapping
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

WSGI_TARGET = "app.wsgi:app"


def resolve_port(env: Mapping[str, str]) -> int:
    raw = (env.get("PORT") or "").strip() or "8080"
    try:
        port = int(raw)
    except ValueError:
        raise SystemExit(f"Invalid PORT {raw!r}: expected an integer.")
    if not 1 <= port <= 65535:
        raise SystemExit(f"Invalid PORT {port}: must be 1-65535.")
    return port


def _positive(env: Mapping[str, str], name: str, default: int) -> int:
    raw = (env.get(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise SystemExit(f"Invalid {name} {raw!r}: expected an integer.")
    if value < 1:
        raise SystemExit(f"Invalid {name} {value}: must be at least 1.")
    return value


def gunicorn_argv(env: Mapping[str, str]) -> list[str]:
    return [
        "gunicorn",
        WSGI_TARGET,
        "--bind", f"0.0.0.0:{resolve_port(env)}",
        "--workers", str(_positive(env, "WEB_CONCURRENCY", 2)),
        "--timeout", str(_positive(env, "GUNICORN_TIMEOUT", 120)),
        "--preload",
        "--access-logfile", "-",
        "--error-logfile", "-",
    ]


def main() -> None:
    env = os.environ
    argv = gunicorn_argv(env)

    if (env.get("SKIP_RELEASE") or "").strip() != "1":
        from scripts.release import run_release

        print("=== Release: migrations + seed ===", flush=True)
        try:
            run_release()
        except Exception as e:
            print(f"Release failed: {e}", flush=True)
            sys.exit(1)

    print(f"=== exec {' '.join(argv)} ===", flush=True)
    os.execvp(argv[0], argv)


if __name__ == "__main__":
    main()
