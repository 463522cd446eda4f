from __future__ import annotations

import argparse
from pathlib import Path

import uvicorn
from rich.console import Console

from .config import load_config
from .logging_setup import configure_logging
from .server import create_app


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run the GI Connect listing worker (vision metadata + listing image pipeline)."
    )
    parser.add_argument(
        "--dotenv",
        type=Path,
        default=None,
        help="Optional path to a .env file with worker settings.",
    )
    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Interface to bind (defaults to HOST or 0.0.0.0).",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to listen on (defaults to PORT or 8080).",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Log level override (defaults to LOG_LEVEL or INFO).",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    console = Console(stderr=True)

    try:
        config = load_config(args.dotenv)
    except RuntimeError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        raise SystemExit(1) from exc

    log_level = (args.log_level or config.server.log_level).upper()
    configure_logging(log_level, console=console)

    if not config.ready:
        console.print(
            "[yellow]Worker starting in not-ready state; missing:[/yellow] "
            + ", ".join(config.missing)
        )

    app = create_app(config=config)
    uvicorn.run(
        app,
        host=args.host or config.server.host,
        port=args.port or config.server.port,
        log_config=None,
        log_level=log_level.lower(),
    )


if __name__ == "__main__":
    main()
