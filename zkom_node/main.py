from __future__ import annotations

import argparse
import asyncio
import os
import signal
import sys
from pathlib import Path

from zkom_node.agent import NodeAgent
from zkom_node.config import ConfigStore, get_config_path, get_log_dir
from zkom_node.errors import NodeAgentError
from zkom_node.logger import setup_logging
from zkom_node.settings import get_settings


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="zkom-node", description="ZKOM worker node agent")
    parser.add_argument("--log-level", default=None, help="override ZKOM_LOG_LEVEL")
    parser.add_argument("--config-dir", default=None, help="override ZKOM_CONFIG_DIR")
    parser.add_argument(
        "--skip-runtime-checks",
        action="store_true",
        help="do not require nvidia-smi and docker at startup",
    )
    return parser.parse_args(argv)


async def run_node(agent: NodeAgent) -> int:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass
    return await agent.run(stop_event)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    if args.config_dir:
        os.environ["ZKOM_CONFIG_DIR"] = args.config_dir

    settings = get_settings()
    if args.skip_runtime_checks:
        settings = settings.model_copy(update={"skip_runtime_checks": True})
    if settings.config_dir and not args.config_dir:
        os.environ["ZKOM_CONFIG_DIR"] = settings.config_dir

    log_dir = Path(settings.log_dir) if settings.log_dir else get_log_dir()
    try:
        logger = setup_logging(log_dir, args.log_level or settings.log_level)
    except OSError as exc:
        print(f"log directory unavailable: {log_dir}: {exc}", file=sys.stderr)
        return 1

    agent = NodeAgent(settings, ConfigStore(get_config_path()), logger)
    try:
        return asyncio.run(run_node(agent))
    except NodeAgentError as exc:
        logger.error("node_agent_fatal", extra={"error": str(exc), "kind": exc.__class__.__name__})
        return 1


if __name__ == "__main__":
    sys.exit(main())
