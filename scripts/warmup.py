from __future__ import annotations

import argparse
import os
import sys
import time

import requests

DEFAULT_SYMBOLS = ["TSLA", "AAPL", "GOOGL"]


def warmup(base_url: str, symbols: list[str], pause_sec: float = 1.5, timeout: float = 60.0) -> int:
    base_url = base_url.rstrip("/")
    print(f"[WARMUP][start] target={base_url}", flush=True)

    try:
        health = requests.get(f"{base_url}/api/health", timeout=timeout)
        health.raise_for_status()
    except requests.RequestException as exc:
        print(f"[WARMUP][health_failed] error={exc}", flush=True)
        return 1
    body = health.json()
    print(
        f"[WARMUP][health] status={body.get('status')} "
        f"queue_size={body.get('queue_size')} cache_size={body.get('cache_size')}",
        flush=True,
    )

    for index, symbol in enumerate(symbols):
        try:
            response = requests.get(f"{base_url}/api/stock/{symbol}", timeout=timeout)
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as exc:
            print(f"[WARMUP][symbol_failed] symbol={symbol} error={exc}", flush=True)
        else:
            if data.get("synthetic"):
                print(f"[WARMUP][synthetic] symbol={symbol} (upstream might be limited)", flush=True)
            else:
                print(
                    f"[WARMUP][loaded] symbol={symbol} price={data.get('price')} "
                    f"change_percent={data.get('change_percent')} state={data.get('state')}",
                    flush=True,
                )
        if index < len(symbols) - 1:
            time.sleep(pause_sec)

    try:
        health = requests.get(f"{base_url}/api/health", timeout=timeout)
        health.raise_for_status()
    except requests.RequestException as exc:
        print(f"[WARMUP][health_failed] error={exc}", flush=True)
        return 1
    body = health.json()
    print(
        f"[WARMUP][done] cache_size={body.get('cache_size')} queue_size={body.get('queue_size')}",
        flush=True,
    )
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Pre-load the quote cache of a running gateway.")
    parser.add_argument("--base-url", default=os.getenv("BASE_URL", "http://localhost:8000"))
    parser.add_argument("--pause", type=float, default=1.5, help="seconds between symbol requests")
    parser.add_argument("symbols", nargs="*", default=DEFAULT_SYMBOLS)
    args = parser.parse_args(argv)
    return warmup(args.base_url, [s.upper() for s in args.symbols], pause_sec=args.pause)


if __name__ == "__main__":
    sys.exit(main())
