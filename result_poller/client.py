"""
Result polling against the proxy's /api/results endpoint.

One polling session is a single coroutine: fetch, classify, report a tick,
then sleep for the next backoff delay. Both the request and the sleep are
abandoned as soon as an asyncio.Event is set. Sessions keep no
shared state and can run side by side for different tokens.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Iterable, Optional

import httpx

from result_poller.backoff import backoff_delays
from result_poller.download import download_result

POLL_HEADERS = {
    "Accept": "text/csv,application/json;q=0.9,*/*;q=0.8",
    "Cache-Control": "no-store",
}

NOT_READY = "not_ready"
READY = "ready"
REJECTED = "rejected"
EXPIRED = "expired"
TRANSIENT_ERROR = "transient_error"
TIMED_OUT = "timed_out"
CANCELLED = "cancelled"

TERMINAL_MESSAGES = {
    400: (REJECTED, "invalid_token", "Invalid or malformed token."),
    410: (EXPIRED, "expired", "Result expired. Please start a new job."),
}


class PollingError(Exception):
    """Terminal polling failure. status mirrors the HTTP-ish code the UI keys on."""

    category = TRANSIENT_ERROR

    def __init__(self, message: str, status: int = 0):
        super().__init__(message)
        self.status = status


class ResultRejected(PollingError):
    """The proxy refused the token (400) or reported it expired (410)."""

    category = REJECTED

    def __init__(self, message: str, status: int, reason: str):
        super().__init__(message, status)
        self.reason = reason
        self.category = EXPIRED if status == 410 else REJECTED


class PollingTimedOut(PollingError):
    category = TIMED_OUT

    def __init__(self, attempts: int):
        super().__init__("Polling timed out", status=504)
        self.attempts = attempts


class PollingCancelled(PollingError):
    category = CANCELLED

    def __init__(self):
        super().__init__("Polling cancelled", status=0)


@dataclass
class PollResult:
    ready: bool
    attempts: int
    downloaded_to: Optional[Path] = None


TickCallback = Callable[[dict], None]


def _emit(on_tick: Optional[TickCallback], attempt: int, status: int, category: str, message: str) -> None:
    if on_tick:
        on_tick({
            "attemptIndex": attempt,
            "status": status,
            "statusCategory": category,
            "message": message,
        })


async def _wait_or_cancel(delay_ms: int, cancel_event: Optional[asyncio.Event]) -> bool:
    """Sleep delay_ms. Returns True when the cancel event fired first."""
    if cancel_event is None:
        await asyncio.sleep(delay_ms / 1000)
        return False
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay_ms / 1000)
    except asyncio.TimeoutError:
        return False
    return True


async def _check_once(client: httpx.AsyncClient, result_url: str) -> tuple[int, str]:
    # Streamed so a ready CSV is not pulled down just to learn its status.
    async with client.stream("GET", result_url, headers=POLL_HEADERS) as response:
        status = response.status_code
        if status in (200, 202) or status in TERMINAL_MESSAGES:
            return status, ""
        try:
            await response.aread()
            text = response.text
        except httpx.HTTPError:
            text = ""
        return status, text


async def _check_or_cancel(
    client: httpx.AsyncClient,
    result_url: str,
    cancel_event: Optional[asyncio.Event],
) -> Optional[tuple[int, str]]:
    """Run one check, or return None as soon as the cancel event fires."""
    if cancel_event is None:
        return await _check_once(client, result_url)
    check = asyncio.ensure_future(_check_once(client, result_url))
    cancelled = asyncio.ensure_future(cancel_event.wait())
    try:
        done, _pending = await asyncio.wait({check, cancelled}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (check, cancelled):
            if not task.done():
                task.cancel()
    if check not in done:
        return None
    return check.result()


async def poll_for_ready(
    client: httpx.AsyncClient,
    result_url: str,
    *,
    cancel_event: Optional[asyncio.Event] = None,
    on_tick: Optional[TickCallback] = None,
    backoff: Optional[Iterable[int]] = None,
) -> PollResult:
    """
    Poll result_url until the proxy answers 200.

    202 keeps polling; 400/410 raise ResultRejected without retrying; any other
    status or a transport error is reported through on_tick and retried.
    Running out of backoff delays raises PollingTimedOut, and a set
    cancel_event raises PollingCancelled.
    """
    delays = iter(backoff if backoff is not None else backoff_delays())
    attempt = 0
    while True:
        if cancel_event is not None and cancel_event.is_set():
            raise PollingCancelled()

        try:
            outcome = await _check_or_cancel(client, result_url, cancel_event)
        except httpx.HTTPError as exc:
            if cancel_event is not None and cancel_event.is_set():
                raise PollingCancelled() from exc
            _emit(on_tick, attempt, 0, TRANSIENT_ERROR, str(exc) or "Network error")
        else:
            # A late answer after cancellation is never acted on.
            if outcome is None or (cancel_event is not None and cancel_event.is_set()):
                raise PollingCancelled()
            status, text = outcome
            if status == 200:
                _emit(on_tick, attempt, 200, READY, "ready")
                return PollResult(ready=True, attempts=attempt + 1)
            if status == 202:
                _emit(on_tick, attempt, 202, NOT_READY, "not ready")
            elif status in TERMINAL_MESSAGES:
                category, reason, message = TERMINAL_MESSAGES[status]
                _emit(on_tick, attempt, status, category, message)
                raise ResultRejected(message, status, reason)
            else:
                message = f"Unexpected status {status}" + (f": {text}" if text else "")
                _emit(on_tick, attempt, status, TRANSIENT_ERROR, message)

        delay = next(delays, None)
        if delay is None:
            _emit(on_tick, attempt, 504, TIMED_OUT, "Polling timed out")
            raise PollingTimedOut(attempt + 1)
        if await _wait_or_cancel(delay, cancel_event):
            raise PollingCancelled()
        attempt += 1


async def wait_and_download(
    client: httpx.AsyncClient,
    result_url: str,
    *,
    dest_dir: Path = Path("."),
    download: Optional[Callable[[httpx.AsyncClient, str, Path], Awaitable[Optional[Path]]]] = None,
    cancel_event: Optional[asyncio.Event] = None,
    on_tick: Optional[TickCallback] = None,
    backoff: Optional[Iterable[int]] = None,
) -> PollResult:
    """Poll until ready, then hand the same location to the download trigger once."""
    result = await poll_for_ready(
        client,
        result_url,
        cancel_event=cancel_event,
        on_tick=on_tick,
        backoff=backoff,
    )
    if result.ready:
        trigger = download or download_result
        result.downloaded_to = await trigger(client, result_url, Path(dest_dir))
    return result


async def wait_for_csv_text(
    client: httpx.AsyncClient,
    result_url: str,
    *,
    cancel_event: Optional[asyncio.Event] = None,
    on_tick: Optional[TickCallback] = None,
    backoff: Optional[Iterable[int]] = None,
) -> str:
    """Poll until ready, then fetch the CSV body as text for in-process use."""
    await poll_for_ready(
        client,
        result_url,
        cancel_event=cancel_event,
        on_tick=on_tick,
        backoff=backoff,
    )
    response = await client.get(result_url, headers={"Accept": "text/csv", "Cache-Control": "no-store"})
    if response.status_code != 200:
        text = response.text
        raise PollingError(
            f"Unexpected status {response.status_code}" + (f": {text}" if text else ""),
            status=response.status_code,
        )
    return response.text
