#!/usr/bin/env python3
"""Classify URLs from the command line without touching the database."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Sequence

from link_health.jobs.classifier import is_broken
from link_health.jobs.probe import DEFAULT_TIMEOUT_SECONDS, ProbeOptions, classify


async def check_urls(urls: Sequence[str], options: ProbeOptions) -> list[dict[str, object]]:
    results: list[dict[str, object]] = []
    for url in urls:
        result = await classify(url, options=options)
        results.append(result.as_dict())
    return results


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Probe URLs and print their health classification as JSON lines.")
    parser.add_argument("urls", nargs="*", help="URLs to check; read from stdin when omitted")
    parser.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT_SECONDS, help="Overall timeout per URL")
    args = parser.parse_args(argv)

    urls = list(args.urls) or [line.strip() for line in sys.stdin if line.strip()]
    results = asyncio.run(check_urls(urls, ProbeOptions(timeout_seconds=args.timeout)))
    for result in results:
        print(json.dumps(result, sort_keys=True))

    broken = sum(1 for result in results if is_broken(str(result["health_status"])))
    return 1 if broken else 0


if __name__ == "__main__":
    sys.exit(main())
