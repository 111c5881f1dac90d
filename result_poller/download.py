"""
Download triggers for a ready result location.
"""

from __future__ import annotations

import re
import webbrowser
from pathlib import Path
from typing import Optional
from urllib.parse import unquote

import httpx

DEFAULT_RESULT_FILENAME = "results.csv"
DOWNLOAD_CHUNK_SIZE = 64 * 1024

_FILENAME_STAR_RE = re.compile(r"filename\*\s*=\s*(?:[\w-]+)?'[^']*'([^;]+)", re.IGNORECASE)
_FILENAME_RE = re.compile(r'filename\s*=\s*(?:"([^"]*)"|([^;]+))', re.IGNORECASE)


def filename_from_disposition(disposition: Optional[str], fallback: str = DEFAULT_RESULT_FILENAME) -> str:
    """Extract a safe basename from a Content-Disposition header."""
    value = str(disposition or "")
    name = ""
    match = _FILENAME_STAR_RE.search(value)
    if match:
        name = unquote(match.group(1).strip())
    else:
        match = _FILENAME_RE.search(value)
        if match:
            name = (match.group(1) if match.group(1) is not None else match.group(2)).strip()
    # Server-supplied names never choose the directory.
    name = Path(name.replace("\\", "/")).name
    if name in {"", ".", ".."}:
        return fallback
    return name


async def download_result(client: httpx.AsyncClient, result_url: str, dest_dir: Path) -> Path:
    """Stream a ready result into dest_dir, honouring the server's filename when given."""
    dest_dir = Path(dest_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)
    async with client.stream("GET", result_url, headers={"Cache-Control": "no-store"}) as response:
        response.raise_for_status()
        target = dest_dir / filename_from_disposition(response.headers.get("Content-Disposition"))
        with open(target, "wb") as fh:
            async for chunk in response.aiter_bytes(DOWNLOAD_CHUNK_SIZE):
                fh.write(chunk)
    return target


def trigger_browser_download(url: str) -> bool:
    """
    Hand the location to the user's browser in a new tab.
    The current page stays put and the browser applies the server's filename.
    """
    return webbrowser.open_new_tab(url)
