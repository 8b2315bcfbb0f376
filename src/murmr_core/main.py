"""Application entrypoint."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

from murmr_core.config import AppConfig, ensure_runtime_config, read_config_snapshot
from murmr_core.interfaces.cli import execute_single_command, run_cli
from murmr_core.runtime import build_context


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Murmr reminder trigger engine")
    parser.add_argument("--env", choices=["dev", "prod"], default="dev")
    parser.add_argument("--data-path", default=None)
    parser.add_argument("--user-id", default=None)
    parser.add_argument("--cooldown", default=None, help="cool-down between fires of one condition, in seconds")
    parser.add_argument("--heartbeat-interval", default=None, help="clock tick interval in seconds")
    parser.add_argument("--store-url", default=None, help="notes API base URL; switches to the http store")
    parser.add_argument("command", nargs=argparse.REMAINDER)
    return parser.parse_args(argv)


def _load_dotenv(path: Path) -> None:
    """Export KEY=VALUE lines from ``path``; variables already set win."""
    if not path.is_file():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        key, sep, value = raw_line.strip().partition("=")
        key = key.strip()
        if not sep or not key or key.startswith("#"):
            continue
        os.environ.setdefault(key, value.strip().strip("\"'"))


def configure_logging(config: AppConfig) -> None:
    level = getattr(logging, config.logging.level.upper(), logging.INFO)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    try:
        log_dir = Path(config.paths.log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_dir / "murmr.log", encoding="utf-8"))
    except OSError:
        pass
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        handlers=handlers,
        force=True,
    )


def main(argv: list[str] | None = None) -> int:
    _load_dotenv(Path(".env"))
    args = parse_args(argv)
    overrides: dict[str, str] = {}
    if args.data_path:
        overrides["paths.data_root"] = str(args.data_path)
    if args.user_id:
        overrides["user.id"] = str(args.user_id)
    if args.cooldown is not None:
        overrides["engine.cooldown_seconds"] = str(args.cooldown)
    if args.heartbeat_interval is not None:
        overrides["heartbeat.interval_seconds"] = str(args.heartbeat_interval)
    if args.store_url:
        overrides["store.backend"] = "http"
        overrides["store.base_url"] = str(args.store_url)

    snapshot = read_config_snapshot(env=args.env, cli_overrides=overrides)
    if snapshot.effective_config is None:
        print("Config is invalid. CLI will run in diagnostics-only mode.")
        for issue in snapshot.issues:
            print(f"- {issue}")

    runtime_config = ensure_runtime_config(snapshot, env=args.env)
    configure_logging(runtime_config)
    context = build_context(config=runtime_config, snapshot=snapshot)

    if args.command:
        command_line = " ".join(args.command).strip()
        return execute_single_command(context, command_line)

    run_cli(context)
    return 0


if __name__ == "__main__":
    sys.exit(main())
