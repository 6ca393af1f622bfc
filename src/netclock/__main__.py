#!/usr/bin/env python3
"""
netclock command line

Starts a network clock, reports the start outcome and every offset update for
a while, then shuts down.

Usage:
    python -m netclock
    python -m netclock -s time.google.com -s time.cloudflare.com --duration 60
    python -m netclock --config netclock.yaml --debug
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from .clock import NetworkClock
from .config import NetworkClockConfig, load_config
from .logging.debug_logger import enable_debug


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="netclock", description="Measure the network clock offset")
    parser.add_argument("-s", "--server", action="append", dest="servers",
                        help="NTP server (host or host:port); repeatable")
    parser.add_argument("-c", "--config", help="YAML config file with a network_clock section")
    parser.add_argument("--duration", type=float, default=30.0,
                        help="Seconds to keep reporting updates (default: 30)")
    parser.add_argument("--debug", action="store_true", help="Verbose logging and call tracing")
    return parser.parse_args(argv)


async def run(config: NetworkClockConfig, duration: float) -> int:
    clock = NetworkClock(config=config)
    print(f"Querying {len(clock.associations)} server(s)...")

    success = await clock.start()
    if success:
        print(f"✓ Network offset: {clock.network_offset * 1000:.3f} ms")
        print(f"  Network time:   {clock.network_time.isoformat()}")
    else:
        print(f"✗ No usable reply within {config.startup_timeout:g}s, still trying")

    # Only offsets published after the start outcome
    with clock.subscribe() as updates:
        async def report_updates():
            async for offset in updates:
                print(f"  offset update:  {offset * 1000:.3f} ms")

        try:
            await asyncio.wait_for(report_updates(), timeout=duration)
        except asyncio.TimeoutError:
            pass
        finally:
            status = clock.status()
            clock.finish()

    print(f"{status.reachable_associations}/{status.total_associations} server(s) reachable")
    for snapshot in status.associations:
        mark = "✓" if snapshot.usable else "✗"
        if snapshot.best_offset is None:
            print(f"  {mark} {snapshot.server}: no usable sample")
        else:
            print(f"  {mark} {snapshot.server}: offset={snapshot.best_offset * 1000:.3f}ms "
                  f"delay={snapshot.best_delay * 1000:.1f}ms quality={snapshot.quality:.1f}")
    return 0 if status.network_offset is not None else 1


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    if args.debug:
        enable_debug()

    config = load_config(args.config) if args.config else NetworkClockConfig()
    if args.servers:
        config.servers = args.servers

    try:
        return asyncio.run(run(config, args.duration))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
