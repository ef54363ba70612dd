import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

from config import LiveProxyConfig
from log_format import ColoredFormatter

ENV_FILE_PATH = Path.home() / ".config" / "live-proxy" / "env"

TALK_HELP = "Commands: [i]nterrupt, [q]uit"


def _load_env_file(path: Path = ENV_FILE_PATH) -> None:
    if not path.exists():
        return
    with open(path) as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if "=" not in line:
                continue
            key, _, value = line.partition("=")
            key = key.strip()
            value = value.strip().strip("'\"")
            if key not in os.environ:
                os.environ[key] = value


def _configure_logging(verbose: bool) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(ColoredFormatter(datefmt="%H:%M:%S"))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        handlers=[handler],
    )
    logging.getLogger("websockets").setLevel(logging.INFO if verbose else logging.WARNING)


def main() -> None:
    _load_env_file()
    parser = argparse.ArgumentParser(description="Live speech-to-speech session proxy")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")

    subparsers = parser.add_subparsers(dest="command")

    serve_parser = subparsers.add_parser("serve", help="Run the proxy server (default)")
    serve_parser.add_argument("--host", help="Listen address")
    serve_parser.add_argument("--port", type=int, help="Listen port")

    talk_parser = subparsers.add_parser("talk", help="Talk to a running proxy from this terminal")
    talk_parser.add_argument("--language", help="Conversation language code")
    talk_parser.add_argument("--url", help="Proxy WebSocket URL")

    args = parser.parse_args()
    _configure_logging(args.verbose)

    config = LiveProxyConfig()

    if args.command == "talk":
        if args.language:
            config.language = args.language
        if args.url:
            config.proxy_url = args.url
        asyncio.run(_run_talk(config))
    else:
        if getattr(args, "host", None):
            config.host = args.host
        if getattr(args, "port", None):
            config.port = args.port
        asyncio.run(_run_server(config))


def _install_shutdown_handler(shutdown_event: asyncio.Event) -> None:
    shutdown_triggered = False

    def handle_signal() -> None:
        nonlocal shutdown_triggered
        if shutdown_triggered:
            logging.warning("Forced exit")
            sys.exit(1)
        shutdown_triggered = True
        logging.info("Shutting down...")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal)


async def _run_server(config: LiveProxyConfig) -> None:
    from health import run_startup_checks, has_critical_failures
    from factory import create_server

    results = run_startup_checks(config, mode="serve")
    if has_critical_failures(results):
        logging.error("Critical health check failures, aborting startup")
        sys.exit(1)

    server = create_server(config)
    shutdown_event = asyncio.Event()
    _install_shutdown_handler(shutdown_event)

    await server.start()
    try:
        await shutdown_event.wait()
    finally:
        await server.stop()


def _render(speaker: str, text: str) -> None:
    print(f"{speaker:>6} | {text}", flush=True)


async def _run_talk(config: LiveProxyConfig) -> None:
    from health import run_startup_checks, has_critical_failures
    from factory import create_voice_client

    results = run_startup_checks(config, mode="talk")
    if has_critical_failures(results):
        logging.error("Critical health check failures, aborting startup")
        sys.exit(1)

    client = create_voice_client(config, render=_render)
    shutdown_event = asyncio.Event()
    _install_shutdown_handler(shutdown_event)

    try:
        await client.start()
    except OSError as exc:
        print(f"Cannot reach proxy at {config.proxy_url}: {exc}", file=sys.stderr)
        sys.exit(1)

    print(TALK_HELP, flush=True)

    async def command_loop() -> None:
        loop = asyncio.get_running_loop()
        lines: asyncio.Queue[str] = asyncio.Queue()
        loop.add_reader(sys.stdin.fileno(), lambda: lines.put_nowait(sys.stdin.readline()))
        try:
            while client.active:
                line = await lines.get()
                if not line:
                    break
                command = line.strip().lower()
                if command in ("i", "interrupt"):
                    await client.interrupt()
                elif command in ("q", "quit"):
                    break
                elif command:
                    print(TALK_HELP, flush=True)
        finally:
            loop.remove_reader(sys.stdin.fileno())

    command_task = asyncio.create_task(command_loop())
    waiters = [
        command_task,
        asyncio.create_task(shutdown_event.wait()),
        asyncio.create_task(client.disconnected.wait()),
    ]
    try:
        await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in waiters:
            task.cancel()
        await client.stop()


if __name__ == "__main__":
    main()
