"""chatrelay — main application entry point."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from chatrelay.engine.config import RelayConfig
from chatrelay.engine.errors import ConfigError

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"


def configure_logging(config: RelayConfig, *, log_name: str, to_stderr: bool, verbose: bool = False) -> Path:
    """Root logger with a rotating file under <state dir>/logs, plus stderr."""
    level_name = "DEBUG" if verbose else config.log_level.upper()
    log_dir = config.state_path / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / log_name

    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name, logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(LOG_FORMAT)
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    if to_stderr:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(formatter)
        root.addHandler(stream_handler)
    # aiohttp.access duplicates our request middleware.
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    return log_file


def load_config(config_path: str | None) -> RelayConfig:
    """Defaults < YAML file < RELAY_* env vars."""
    base = None
    if config_path:
        from chatrelay.engine.yaml_config import load_yaml_config

        base = load_yaml_config(config_path)
    return RelayConfig.from_env(base)


def _print_projects(config: RelayConfig) -> None:
    from chatrelay.shared.services.path_codec import list_projects

    projects = list_projects(config.projects_root)
    if not projects:
        print("No projects found.")
        return
    for project in projects:
        print(f"  {project.display_name:<30} {project.session_count:>4}  {project.path}")


def _print_sessions(config: RelayConfig, cwd: str) -> None:
    from chatrelay.shared.services.session_store import SessionStore

    sessions = SessionStore(config.projects_root).list_sessions(cwd)
    if not sessions:
        print("No sessions.")
        return
    for session in sessions:
        print(f"  {session.id}  {session.updated_at}  {session.title}")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="chatrelay",
        description="chatrelay — relay a chat client to the claude CLI",
    )
    parser.add_argument(
        "--server", action="store_true",
        help="Start the HTTP+WebSocket relay server (default)",
    )
    parser.add_argument(
        "--chat", action="store_true",
        help="Start the console chat client against a running server",
    )
    parser.add_argument(
        "--url", default=None,
        help="Server URL for --chat (default: http://<host>:<port>)",
    )
    parser.add_argument("--host", help="Server bind address")
    parser.add_argument(
        "--port", type=int, default=None,
        help="Server port (0=random available port)",
    )
    parser.add_argument(
        "--cwd", default=None,
        help="Project directory for --chat and --list-sessions (default: current)",
    )
    parser.add_argument("--model", help="Model alias or id for --chat")
    parser.add_argument(
        "--list-projects", action="store_true",
        help="List projects with stored sessions and exit",
    )
    parser.add_argument(
        "--list-sessions", action="store_true",
        help="List stored sessions for --cwd and exit",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (server, agent and paths sections)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args()

    try:
        config = load_config(args.config)
    except ConfigError as exc:
        print(f"chatrelay: {exc}", file=sys.stderr)
        sys.exit(2)
    overrides = {"host": args.host, "port": args.port}
    config = config.merged({k: v for k, v in overrides.items() if v is not None})
    cwd = os.path.abspath(args.cwd or os.getcwd())

    if args.list_projects:
        _print_projects(config)
        sys.exit(0)
    if args.list_sessions:
        _print_sessions(config, cwd)
        sys.exit(0)

    if args.chat:
        from chatrelay.client.console import run_console

        log_file = configure_logging(config, log_name="chatrelay-client.log", to_stderr=False, verbose=args.verbose)
        logging.getLogger(__name__).info("Console client starting; log=%s", log_file)
        url = args.url or f"http://{config.host}:{config.port}"
        sys.exit(asyncio.run(run_console(url, cwd=cwd, model=args.model or config.default_model)))

    from chatrelay.web.server import RelayServer

    log_file = configure_logging(config, log_name="chatrelay-server.log", to_stderr=True, verbose=args.verbose)
    logger = logging.getLogger(__name__)
    logger.info(
        "Server logging initialized: level=%s file=%s pid=%s argv=%s",
        logging.getLevelName(logging.getLogger().level), log_file, os.getpid(), sys.argv,
    )
    server = RelayServer(config)
    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        logger.info("Server interrupted; shutting down")


if __name__ == "__main__":
    main()
