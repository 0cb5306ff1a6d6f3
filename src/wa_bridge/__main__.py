from __future__ import annotations

import argparse
import asyncio
import atexit
import fcntl
import importlib.metadata
import json
import sys
from pathlib import Path

from pydantic import ValidationError

from .config import BridgeSettings
from .daemon import run as run_daemon

_LOCK_FILE = None


def _acquire_daemon_lock(settings: BridgeSettings) -> Path:
    """Hold an exclusive lock so only one daemon drives a credential store."""
    lock_path = Path(settings.auth_dir).with_suffix(".daemon.lock")
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    lock_fd = lock_path.open("w")
    try:
        fcntl.flock(lock_fd.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except BlockingIOError as exc:
        lock_fd.close()
        raise RuntimeError(
            f"Another wa-bridge daemon appears to be running (lock: {lock_path})."
        ) from exc
    lock_fd.write(str(Path.cwd()))
    lock_fd.flush()
    global _LOCK_FILE
    _LOCK_FILE = lock_fd
    atexit.register(lock_fd.close)
    return lock_path


def _get_version() -> str:
    try:
        return importlib.metadata.version("wa-bridge")
    except importlib.metadata.PackageNotFoundError:
        return "0.1.0 (dev)"


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="WhatsApp to Claude CLI bridge")
    parser.add_argument("mode", choices=["daemon", "config", "version"], nargs="?", default="daemon")
    parser.add_argument("--version", "-V", action="store_true", help="Show version and exit")
    parser.add_argument("--env-file", dest="env_file", default=".env", help="Path to .env file")
    args = parser.parse_args(argv)

    if args.version or args.mode == "version":
        print(f"wa-bridge {_get_version()}")
        return

    try:
        settings = BridgeSettings(_env_file=args.env_file)
    except ValidationError as exc:
        print(f"Invalid configuration:\n{exc}", file=sys.stderr)
        raise SystemExit(2) from exc

    if args.mode == "config":
        print(json.dumps(settings.redacted_dump(), indent=2, ensure_ascii=False))
        return

    if not settings.transport_factory:
        print("wa_bridge_transport_factory is not set (expected package.module:callable).", file=sys.stderr)
        raise SystemExit(2)
    try:
        _acquire_daemon_lock(settings)
    except RuntimeError as exc:
        print(str(exc), file=sys.stderr)
        raise SystemExit(1) from exc
    asyncio.run(run_daemon(settings))


if __name__ == "__main__":
    main()
