"""
Command-line caller for the marketing jobs proxy.

Submits DM-list or leads jobs through the proxy and waits for the CSV result,
showing poll progress with tqdm.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import signal
import sys
from pathlib import Path
from typing import Optional

import httpx
from tqdm import tqdm

from result_poller.backoff import DEFAULT_CAP_MS, DEFAULT_MAX_ATTEMPTS, backoff_delays
from result_poller.client import PollingCancelled, PollingTimedOut, ResultRejected, wait_and_download
from result_poller.download import trigger_browser_download

DEFAULT_PROXY_URL = "http://127.0.0.1:8000"
SUBMIT_TIMEOUT_SECONDS = 60.0

EXIT_OK = 0
EXIT_REJECTED = 1
EXIT_TIMED_OUT = 2
EXIT_CANCELLED = 130


def _install_cancel_handler(cancel_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel_event.set)
    except (NotImplementedError, RuntimeError):
        # Windows event loops have no signal handlers; Ctrl-C then raises KeyboardInterrupt.
        pass


async def _submit(client: httpx.AsyncClient, path: str, content: bytes, content_type: str) -> Optional[dict]:
    response = await client.post(path, content=content, headers={"Content-Type": content_type})
    if response.status_code == 202:
        data = response.json()
        print(f"Job accepted: turnId={data.get('turnId')} resultUrl={data.get('resultUrl')}")
        return data
    try:
        body = response.json()
    except ValueError:
        body = response.text
    if isinstance(body, dict) and body.get("code"):
        print(f"Rejected ({body['code']}): {body.get('error', '')}", file=sys.stderr)
    else:
        print(f"Submission failed with status {response.status_code}: {body}", file=sys.stderr)
    return None


async def _open_in_browser(client: httpx.AsyncClient, result_url: str, _dest_dir: Path) -> None:
    trigger_browser_download(str(client.base_url.join(result_url)))


async def _wait_for_result(client: httpx.AsyncClient, result_url: str, args) -> int:
    cancel_event = asyncio.Event()
    _install_cancel_handler(cancel_event)
    progress = tqdm(total=args.max_attempts + 1, desc="Waiting for result", unit="poll")

    def on_tick(tick: dict) -> None:
        progress.update(1)
        progress.set_postfix_str(f"{tick['statusCategory']}: {tick['message']}"[:80])

    download = _open_in_browser if args.open_browser else None
    try:
        result = await wait_and_download(
            client,
            result_url,
            dest_dir=Path(args.out_dir),
            download=download,
            cancel_event=cancel_event,
            on_tick=on_tick,
            backoff=backoff_delays(args.max_attempts, args.cap_ms),
        )
    except ResultRejected as exc:
        progress.close()
        print(f"Result rejected ({exc.status}): {exc}", file=sys.stderr)
        return EXIT_REJECTED
    except PollingTimedOut as exc:
        progress.close()
        print(f"Gave up after {exc.attempts} polls. The job may still finish; try again later.", file=sys.stderr)
        return EXIT_TIMED_OUT
    except PollingCancelled:
        progress.close()
        print("Cancelled.", file=sys.stderr)
        return EXIT_CANCELLED
    progress.close()
    if result.downloaded_to is not None:
        print(f"Saved result to {result.downloaded_to}")
    else:
        print("Result ready; opened in browser.")
    return EXIT_OK


async def run_cli_async(args) -> int:
    async with httpx.AsyncClient(base_url=args.base_url, timeout=SUBMIT_TIMEOUT_SECONDS) as client:
        if args.command == "fetch":
            return await _wait_for_result(client, args.result_url, args)

        if args.command == "submit-dm-list":
            content = Path(args.csv).expanduser().read_bytes()
            accepted = await _submit(client, "/api/marketing/generate_dm_list", content, "text/csv")
        else:
            payload: dict = {"seedUserNames": list(args.seed or [])}
            if args.filters:
                try:
                    payload["filters"] = json.loads(args.filters)
                except ValueError:
                    print("--filters must be a JSON object.", file=sys.stderr)
                    return EXIT_REJECTED
            accepted = await _submit(
                client,
                "/api/marketing/generate_leads",
                json.dumps(payload).encode("utf-8"),
                "application/json",
            )

        if accepted is None:
            return EXIT_REJECTED
        if not args.wait:
            return EXIT_OK
        return await _wait_for_result(client, accepted.get("resultUrl") or "/api/results", args)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="marketing-jobs",
        description="Submit marketing jobs through the proxy and download their CSV results.",
    )
    parser.add_argument(
        "--base-url",
        default=os.getenv("MARKETING_PROXY_URL", DEFAULT_PROXY_URL),
        help="Proxy origin (not the marketing backend).",
    )
    parser.add_argument("--max-attempts", type=int, default=DEFAULT_MAX_ATTEMPTS)
    parser.add_argument("--cap-ms", type=int, default=DEFAULT_CAP_MS)
    parser.add_argument("--out-dir", default=".", help="Directory for downloaded results.")
    parser.add_argument("--open-browser", action="store_true", help="Open the ready result in a browser tab instead of saving it.")

    sub = parser.add_subparsers(dest="command", required=True)

    dm = sub.add_parser("submit-dm-list", help="Submit a userName,userLink[,directMessage] CSV.")
    dm.add_argument("csv", help="Path to the CSV file.")
    dm.add_argument("--wait", action="store_true", help="Poll for the result after submitting.")

    leads = sub.add_parser("submit-leads", help="Submit seed user names for lead discovery.")
    leads.add_argument("--seed", action="append", required=True, help="Seed user name (repeatable).")
    leads.add_argument("--filters", default="", help="Optional JSON object passed through to the backend.")
    leads.add_argument("--wait", action="store_true", help="Poll for the result after submitting.")

    fetch = sub.add_parser("fetch", help="Poll an /api/results?token=... location and download it.")
    fetch.add_argument("result_url")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    return asyncio.run(run_cli_async(args))


if __name__ == "__main__":
    raise SystemExit(main())
