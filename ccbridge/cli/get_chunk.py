"""Fetch HTML fragments of a conversation's page snapshot from a running bridge.

Usage:
    ccbridge-get-chunk --conversation-id conv-123 --selector "#main-content"
    ccbridge-get-chunk --conversation-id conv-123 --selector header --selector "#main"
    ccbridge-get-chunk --conversation-id conv-123 --selectors ".hero,header,#main"
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Any, TextIO
from urllib.parse import quote

import aiohttp

DEFAULT_BRIDGE_URL = "http://localhost:3000"


def collect_selectors(selector: list[str] | None, selectors: str | None) -> list[str]:
    result = [s for s in (selector or []) if s.strip()]
    if selectors:
        result.extend(s.strip() for s in selectors.split(",") if s.strip())
    return result


def build_params(selectors: list[str]) -> dict[str, str]:
    if len(selectors) == 1:
        return {"selector": selectors[0]}
    return {"selectors": ",".join(selectors)}


async def fetch_chunk(
    bridge_url: str,
    conversation_id: str,
    selectors: list[str],
    *,
    timeout: float = 30.0,
) -> tuple[int, Any]:
    """GET /conversations/{id}/chunk. Returns (status, decoded body)."""
    url = f"{bridge_url.rstrip('/')}/conversations/{quote(conversation_id, safe='')}/chunk"
    async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as session:
        async with session.get(url, params=build_params(selectors)) as response:
            try:
                data = await response.json(content_type=None)
            except ValueError:
                data = await response.text()
            return response.status, data


def render(
    status: int,
    data: Any,
    selectors: list[str],
    out: TextIO = sys.stdout,
    err: TextIO = sys.stderr,
) -> int:
    """Print a chunk response. Returns the process exit status."""
    if status != 200:
        message = data.get("error") if isinstance(data, dict) else None
        fallback = "Element not found" if status == 404 else "Request failed"
        print(f"Error: {message or fallback}", file=err)
        return 1
    if not isinstance(data, dict):
        print("Error: Unexpected response from bridge", file=err)
        return 1

    if "found" in data:
        if data["found"]:
            print(data.get("html", ""), file=out)
            return 0
        print(f"Error: Element not found for selector: {selectors[0]}", file=err)
        return 1

    for result in data.get("results", []):
        print(f"\n## {result.get('selector')}", file=out)
        if result.get("found"):
            print(result.get("html", ""), file=out)
        else:
            print(f"Error: {result.get('error') or 'Element not found'}", file=out)
    return 0


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="ccbridge-get-chunk",
        description="Retrieve HTML fragments from a conversation's page snapshot",
    )
    parser.add_argument(
        "--conversation-id", required=True,
        help="The conversation ID to retrieve HTML from",
    )
    parser.add_argument(
        "--selector", action="append",
        help="CSS selector (or XPath) for the element; may be repeated",
    )
    parser.add_argument(
        "--selectors",
        help="Comma-separated list of selectors (alternative to repeated --selector)",
    )
    parser.add_argument(
        "--bridge-url", default=DEFAULT_BRIDGE_URL,
        help=f"Bridge server URL (default: {DEFAULT_BRIDGE_URL})",
    )
    args = parser.parse_args(argv)

    selectors = collect_selectors(args.selector, args.selectors)
    if not selectors:
        print("Error: --selector is required", file=sys.stderr)
        sys.exit(1)

    try:
        status, data = asyncio.run(
            fetch_chunk(args.bridge_url, args.conversation_id, selectors)
        )
    except (aiohttp.ClientError, asyncio.TimeoutError):
        print(f"Error: Failed to connect to bridge server at {args.bridge_url}", file=sys.stderr)
        print("Make sure the bridge is running: ccbridge", file=sys.stderr)
        sys.exit(1)
    sys.exit(render(status, data, selectors))


if __name__ == "__main__":
    main()
