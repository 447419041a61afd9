"""Relay entrypoint. Loads config, starts the relay, stops on SIGINT/SIGTERM."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any

import yaml
from loguru import logger

from busrelay import __version__
from busrelay.config import ProxyConfig, _deep_update, load_config_with_env, render_template
from busrelay.core.errors import RelayConfigurationError, RelayError
from busrelay.gateway import Relay

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INVALID_CONFIG = 2

# Third-party libraries to intercept and route through loguru
_INTERCEPTED_LIBRARIES = ["asyncio", "dbus_fast", "dbus_fast.aio", "dbus_fast.message_bus"]

_LOG_FORMAT = "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan> | {message}"


def _intercept_logging(level: str) -> None:
    """Route dbus-fast (stdlib logging) records to loguru."""

    class InterceptHandler(logging.Handler):
        def emit(self, record: logging.LogRecord) -> None:
            try:
                log_level: str | int = logger.level(record.levelname).name
            except ValueError:
                log_level = record.levelno
            msg = record.getMessage().replace("{", "{{").replace("}", "}}")
            logger.patch(
                lambda r: r.update(
                    name=record.name,
                    function=record.funcName,
                    line=record.lineno,
                ),
            ).opt(exception=record.exc_info).log(log_level, msg)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for lib in _INTERCEPTED_LIBRARIES:
        lib_logger = logging.getLogger(lib)
        lib_logger.handlers = [InterceptHandler()]
        lib_logger.propagate = False
        lib_logger.setLevel(level)


def _safe_message_filter(record: Any) -> bool:
    """Escape braces/angles in log messages to prevent format/tag errors."""
    if isinstance(record.get("message"), str):
        msg = record["message"]
        msg = msg.replace("{", "{{").replace("}", "}}").replace("<", "\\<")
        record["message"] = msg
    return True


def setup_logging(verbose: bool = False, log_file: str | None = None) -> None:
    """Configure loguru. Replace default logging.
    Level: verbose=True or LOG_LEVEL=DEBUG enables DEBUG; otherwise INFO.
    log_file adds a second sink at the same level."""
    level = "INFO"
    if verbose:
        level = "DEBUG"
    else:
        env_level = (os.environ.get("LOG_LEVEL") or "").upper()
        if env_level in ("DEBUG", "INFO", "WARNING", "ERROR"):
            level = env_level

    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format=_LOG_FORMAT,
        filter=_safe_message_filter,
    )
    if log_file:
        logger.add(
            log_file,
            level=level,
            format=_LOG_FORMAT,
            filter=_safe_message_filter,
            colorize=False,
        )
    _intercept_logging(level)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="busrelay",
        description="Expose a D-Bus object from one bus on another under a new well-known name",
    )
    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        default=Path("busrelay.yaml"),
        help="Path to config file (default: busrelay.yaml)",
    )
    parser.add_argument("--source-bus", "-s", help="Source bus: system, session, or a D-Bus address")
    parser.add_argument("--target-bus", "-t", help="Target bus: system, session, or a D-Bus address")
    parser.add_argument("--service-name", "-n", help="Source service name to relay")
    parser.add_argument("--object-path", "-p", help="Source object path to relay")
    parser.add_argument("--proxy-name", "-x", help="Well-known name to own on the target bus")
    parser.add_argument("--timeout-ms", type=int, help="Timeout for forwarded calls in milliseconds")
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--show-config",
        action="store_true",
        help="Print the validated configuration and exit",
    )
    parser.add_argument(
        "--create-config",
        type=Path,
        metavar="FILE",
        help="Write a sample config file and exit",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    return parser


def cli_overrides(args: argparse.Namespace) -> dict[str, Any]:
    """Config fragment from the flags that were actually given."""
    result: dict[str, Any] = {}
    source = {
        "bus": args.source_bus,
        "service": args.service_name,
        "object_path": args.object_path,
    }
    target = {"bus": args.target_bus, "name": args.proxy_name}
    source = {k: v for k, v in source.items() if v is not None}
    target = {k: v for k, v in target.items() if v is not None}
    if source:
        result["source"] = source
    if target:
        result["target"] = target
    if args.timeout_ms is not None:
        result["call_timeout_ms"] = args.timeout_ms
    if args.verbose:
        result["verbose"] = True
    return result


def build_config(args: argparse.Namespace) -> ProxyConfig:
    """Merge YAML, env and CLI into a validated ProxyConfig."""
    try:
        data = load_config_with_env(args.config)
    except yaml.YAMLError as exc:
        raise RelayConfigurationError(
            f"Invalid YAML in {args.config}: {exc}",
            code="invalid_yaml",
            original_error=exc,
        ) from exc
    return ProxyConfig.from_mapping(_deep_update(data, cli_overrides(args)))


def create_config(path: Path, args: argparse.Namespace) -> int:
    """Write the commented template, seeded with any names given on the command line."""
    seeds = {
        "source_service": args.service_name,
        "source_object_path": args.object_path,
        "proxy_name": args.proxy_name,
        "source_bus": args.source_bus,
        "target_bus": args.target_bus,
    }
    try:
        path.write_text(render_template(**{k: v for k, v in seeds.items() if v}))
    except OSError as exc:
        logger.error("Cannot create config template {}: {}", path, exc)
        return EXIT_FAILURE
    logger.info("Config template written to {}", path)
    return EXIT_OK


def main(argv: list[str] | None = None) -> None:
    """Main entrypoint."""
    args = build_parser().parse_args(argv)

    setup_logging(args.verbose)

    if args.create_config is not None:
        sys.exit(create_config(args.create_config, args))

    try:
        config = build_config(args)
    except RelayConfigurationError as exc:
        logger.error("Invalid configuration: {}", exc)
        sys.exit(EXIT_INVALID_CONFIG)

    if args.show_config:
        print("\n".join(config.describe()))
        sys.exit(EXIT_OK)

    setup_logging(config.verbose, config.log_file)
    if config.verbose:
        for line in config.describe():
            logger.debug(line)

    # Run async main (uvloop if available for better I/O throughput)
    try:
        import uvloop

        code = uvloop.run(_run(config))
    except ImportError:
        code = asyncio.run(_run(config))
    sys.exit(code)


async def _run(config: ProxyConfig) -> int:
    """Async run loop. Start the relay and serve until stopped."""
    relay = Relay(config)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, relay.request_stop)

    try:
        await relay.run()
    except RelayError as exc:
        logger.error("Relay failed: {}", exc)
        return EXIT_FAILURE
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        await relay.stop()
    return EXIT_OK


if __name__ == "__main__":
    main()
