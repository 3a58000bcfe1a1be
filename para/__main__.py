import argparse
import logging
import socket
import sys
from pathlib import Path

from . import __version__
from .config import load_config
from .errors import ConfigError, IoError
from .server import create_app
from .sync import SyncCoordinator
from .watcher import Watcher

logger = logging.getLogger("para")


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    # werkzeug logs every request, including each SSE keepalive connection
    logging.getLogger("werkzeug").setLevel(logging.INFO if verbose else logging.WARNING)


def default_notes_dir() -> Path:
    return Path.home() / "src" / "Notes"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="para", description="PARA notes web server")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)
    serve = sub.add_parser("serve", help="Serve the notes directory as a web interface")
    serve.add_argument("--notes-dir", type=Path, default=None, help="Notes root directory (default: ~/src/Notes)")
    serve.add_argument("--host", default=None, help="Interface to bind")
    serve.add_argument("--port", type=int, default=None, help="Port to listen on (default: 8989)")
    serve.add_argument("--debounce-ms", type=int, default=None, help="Watcher debounce window in milliseconds")
    serve.add_argument("--max-results", type=int, default=None, help="Maximum number of search results")
    serve.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def serve(args) -> int:
    notes_dir = args.notes_dir or default_notes_dir()
    try:
        config = load_config(notes_dir, {
            "host": args.host,
            "port": args.port,
            "debounce_ms": args.debounce_ms,
            "max_results": args.max_results,
        })
    except ConfigError as e:
        logger.error("%s", e.message)
        return 2

    coordinator = SyncCoordinator(config, Watcher(config))
    try:
        coordinator.rebuild()
    except IoError as e:
        logger.error("Cannot index %s: %s", config.notes_dir, e.message)
        return 2
    coordinator.start()

    app = create_app(coordinator)
    try:
        local_ip = socket.gethostbyname(socket.gethostname())
    except OSError:
        local_ip = "127.0.0.1"
    print(f"Serving notes: {config.notes_dir}")
    print(f"Open http://localhost:{config.port}    (this machine)")
    if config.host not in ("127.0.0.1", "localhost"):
        print(f"     http://{local_ip}:{config.port}  (other devices on network)")
    try:
        app.run(host=config.host, port=config.port, threaded=True)
    finally:
        coordinator.stop()
    return 0


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(getattr(args, "verbose", False))
    if args.command == "serve":
        return serve(args)
    return 1


if __name__ == "__main__":
    sys.exit(main())
