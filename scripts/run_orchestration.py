from __future__ import annotations

import argparse
import json
import os
from pathlib import Path
from urllib.parse import urlparse

import httpx
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Send one orchestration request to a running listing worker and show the result."
    )
    parser.add_argument("image_url", type=str, help="Publicly fetchable URL of the vendor product image.")
    parser.add_argument("product_name", type=str, help="Product name entered by the vendor.")
    parser.add_argument("--maker-id", type=str, default=None, help="Maker id used as the storage namespace.")
    parser.add_argument(
        "--worker-url",
        type=str,
        default="http://localhost:8080",
        help="Base URL of the worker (default: http://localhost:8080).",
    )
    parser.add_argument(
        "--dotenv",
        type=Path,
        default=None,
        help="Optional .env file providing WORKER_SHARED_SECRET.",
    )
    parser.add_argument(
        "--download-dir",
        type=Path,
        default=None,
        help="Optional directory to save the generated images into.",
    )
    parser.add_argument("--timeout", type=float, default=300.0, help="Request timeout in seconds.")
    return parser.parse_args()


def _render_result(console: Console, status: int, payload: dict) -> None:
    if status != 200:
        console.print(f"[red]Worker answered {status}:[/red] {payload.get('error')}")
        if payload.get("details"):
            console.print(f"  details: {payload['details']}")
        if payload.get("vision"):
            console.print_json(json.dumps(payload["vision"]))
        return

    table = Table(title="Listing suggestion")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    for key in ("product_name", "category", "description", "price", "stock"):
        table.add_row(key, str(payload.get(key, "")))
    console.print(table)

    images = payload.get("generated_images") or []
    console.print(f"[green]{len(images)} generated image(s)[/green]")
    for url in images:
        console.print(f"  {url}")


def _download(client: httpx.Client, urls: list[str], target: Path, console: Console) -> None:
    target.mkdir(parents=True, exist_ok=True)
    for url in urls:
        name = Path(urlparse(url).path).name or "image.png"
        response = client.get(url)
        if response.is_error:
            console.print(f"[yellow]Download failed ({response.status_code}):[/yellow] {url}")
            continue
        (target / name).write_bytes(response.content)
        console.print(f"Saved {target / name}")


def main() -> None:
    args = parse_args()
    console = Console()

    if args.dotenv:
        load_dotenv(args.dotenv)
    secret = os.getenv("WORKER_SHARED_SECRET")
    if not secret:
        console.print("[red]WORKER_SHARED_SECRET is not set[/red]")
        raise SystemExit(1)

    body = {"image_url": args.image_url, "product_name": args.product_name}
    if args.maker_id:
        body["maker_id"] = args.maker_id

    with httpx.Client(timeout=httpx.Timeout(args.timeout)) as client:
        with console.status("Waiting for the worker..."):
            response = client.post(
                f"{args.worker_url.rstrip('/')}/orchestrate",
                json=body,
                headers={"x-worker-secret": secret},
            )
        try:
            payload = response.json()
        except ValueError:
            console.print(f"[red]Non-JSON response ({response.status_code}):[/red] {response.text[:500]}")
            raise SystemExit(1)

        _render_result(console, response.status_code, payload)
        if response.status_code == 200 and args.download_dir:
            _download(client, payload.get("generated_images") or [], args.download_dir, console)

    if response.status_code != 200:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
