#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Many worktree manager core.
Serves the control channel as JSON lines over stdin/stdout; logs go to stderr.
"""

import argparse
import atexit
import json
import os
import sys
import threading

import config
from bridge import TransportBridge
from context import AppContext
from logging_config import ErrorLog, get_logger, setup_logging

logger = get_logger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="many", description="Git worktree manager core (JSON lines on stdio)")
    parser.add_argument("--config-dir", help=f"State and log directory (default: ${config.CONFIG_DIR_ENV} "
                                             "or the platform config directory)")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ERROR or CRITICAL")
    parser.add_argument("--json-logs", action="store_true", help="Write structured JSON log lines")
    parser.add_argument("--no-file-log", action="store_true", help="Only log to stderr")
    return parser.parse_args(argv)


def _stdout_sink(stream):
    def send(message: dict) -> None:
        stream.write(json.dumps(message, ensure_ascii=False) + "\n")
        stream.flush()
    return send


def serve(bridge: TransportBridge, stream) -> None:
    """Feed one request per input line to the bridge until EOF."""
    for line in stream:
        line = line.strip()
        if not line:
            continue
        try:
            message = json.loads(line)
        except ValueError as e:
            logger.warning(f"Ignoring malformed request line: {e}")
            continue
        bridge.submit(message)


def main(argv=None) -> int:
    args = parse_args(argv)
    if args.config_dir:
        os.environ[config.CONFIG_DIR_ENV] = args.config_dir

    error_log = ErrorLog()
    ctx = AppContext.create(store=config.JsonStateStore(), error_log=error_log)
    state = ctx.load_state()
    level = args.log_level or config.get_setting(state, "log_level")
    setup_logging(level=level, log_to_file=not args.no_file_log, log_to_console=True,
                  json_format=args.json_logs)

    error_log.start()
    error_log.reset()

    bridge = TransportBridge(ctx, _stdout_sink(sys.stdout),
                             max_workers=int(config.get_setting(state, "worker_count")))

    shutdown_once = threading.Lock()

    def shutdown():
        if shutdown_once.acquire(blocking=False):
            bridge.shutdown()
            error_log.stop()

    atexit.register(shutdown)

    logger.info(f"Many core started (config dir: {config.config_dir()})")
    bridge.start()
    try:
        serve(bridge, sys.stdin)
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        shutdown()
    logger.info("Many core exiting")
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except Exception as e:
        logger.critical(f"Fatal error during startup: {e}", exc_info=True)
        sys.exit(1)
