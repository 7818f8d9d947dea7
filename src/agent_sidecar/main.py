"""Process entrypoint: bootstrap settings and logging, then serve on stdio."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import dataclasses
import logging
import signal

from agent_sidecar import __version__
from agent_sidecar.broker import Broker
from agent_sidecar.engine import AgentEngine
from agent_sidecar.log_utils import configure_logging, log_event
from agent_sidecar.settings import SidecarSettings, load_settings, parse_level
from agent_sidecar.transport import open_stdio

logger = logging.getLogger("sidecar")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agent-sidecar",
        description="Agent sidecar speaking line-delimited JSON over stdin/stdout",
    )
    parser.add_argument("--log-level", help="Log level (DEBUG, INFO, WARNING, ...)")
    parser.add_argument("--log-file", help="Also write logs to this file (rotated)")
    parser.add_argument("--no-stderr-log", action="store_true", help="Do not log to stderr")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def apply_args(settings: SidecarSettings, args: argparse.Namespace) -> SidecarSettings:
    log = settings.log
    if args.log_level:
        log = dataclasses.replace(log, level=parse_level(args.log_level, log.level))
    if args.no_stderr_log:
        log = dataclasses.replace(log, stderr=False)
    return dataclasses.replace(settings, log=log)


def default_engine(settings: SidecarSettings) -> AgentEngine:
    from agent_sidecar.pydantic_engine import PydanticAIEngine  # Imported lazily; pulls in provider SDKs

    return PydanticAIEngine(max_histories=settings.history_limit)


def _install_signal_handlers(broker: Broker) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, broker.request_shutdown, sig.name)


async def serve(settings: SidecarSettings, engine: AgentEngine) -> None:
    """Run the broker on the process's stdin/stdout until shutdown."""

    reader, out = await open_stdio()
    broker = Broker(reader, out, engine, settings=settings)
    _install_signal_handlers(broker)
    await broker.run()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = apply_args(load_settings(), args)
        configure_logging(settings.log, log_file=args.log_file)
        engine = default_engine(settings)
    except Exception as exc:  # noqa: BLE001 - nothing is running yet
        logging.basicConfig(level=logging.ERROR)
        logger.error("Sidecar bootstrap failed: %s", exc, exc_info=True)
        return 1

    log_event(logger, "sidecar.start", version=__version__, default_model=settings.default_model)
    try:
        asyncio.run(serve(settings, engine))
    except KeyboardInterrupt:
        return 0
    except Exception:  # noqa: BLE001
        logger.exception("Sidecar stopped after an unrecoverable error")
        return 0
    return 0


def main_entry() -> int:
    return main()


if __name__ == "__main__":
    raise SystemExit(main_entry())
