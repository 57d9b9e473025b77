"""Command line entry point for the tcpgate component."""

import argparse
import asyncio
import contextlib
import logging
import signal
import sys

import zmq

from tcpgate.bridge import Bridge
from tcpgate.config import TcpGateConfig
from tcpgate.models import COMPONENT_DOC

LOG = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tcpgate", description=COMPONENT_DOC.description)
    parser.add_argument(
        "--port.options",
        dest="options_endpoint",
        default="",
        help="Component's options port endpoint",
    )
    parser.add_argument(
        "--port.in",
        dest="in_endpoint",
        default="",
        help="Component's input port endpoint",
    )
    parser.add_argument(
        "--port.out",
        dest="out_endpoint",
        default="",
        help="Component's output port endpoint",
    )
    parser.add_argument("--json", action="store_true", help="Print component documentation in JSON")
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    return parser


def configure_logging(debug: bool) -> None:
    if debug:
        logging.basicConfig(
            level=logging.DEBUG,
            stream=sys.stdout,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")


async def run(bridge: Bridge) -> None:
    task = asyncio.create_task(bridge.run())

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, task.cancel)

    with contextlib.suppress(asyncio.CancelledError):
        await task


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.json:
        print(COMPONENT_DOC.model_dump_json(indent=2))
        return 0

    configure_logging(args.debug)

    if not (args.options_endpoint and args.in_endpoint and args.out_endpoint):
        parser.print_usage(sys.stderr)
        return 1

    bridge = Bridge(
        args.options_endpoint,
        args.in_endpoint,
        args.out_endpoint,
        config=TcpGateConfig(),
    )
    exit_code = 0
    try:
        asyncio.run(run(bridge))
    except* (OSError, zmq.ZMQError) as group:
        for exc in group.exceptions:
            LOG.error("tcpgate failed: %s", exc)
        exit_code = 1
    finally:
        bridge.context.term()
    return exit_code
