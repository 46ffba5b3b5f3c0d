#!/usr/bin/env python3
"""Spawn a Dispatcher grid (or a single Instance) and keep it running.

Usage:
    python scripts/start_grid.py                 # 3-node grid
    python scripts/start_grid.py --grid-size 5
    python scripts/start_grid.py --light         # single-Instance pools
    python scripts/start_grid.py --single        # one Instance, no grid

Everything spawned is torn down on Ctrl-C.
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import structlog
from rich.console import Console
from rich.table import Table

from gridfleet.core.log import configure_logging
from gridfleet.core.options import DEFAULT_CONFIG_PATH, load_options
from gridfleet.processes.instances import Instances


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Spawn a gridfleet Dispatcher grid",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="YAML options file")
    parser.add_argument("--grid-size", type=int, default=None, help="Dispatchers to chain")
    parser.add_argument("--light", action="store_true", help="Use light Dispatchers")
    parser.add_argument("--single", action="store_true", help="Spawn one Instance, no grid")
    return parser.parse_args()


def render(console: Console, instances: Instances) -> None:
    table = Table(title="gridfleet")
    table.add_column("Kind")
    table.add_column("URL")
    for url in instances.dispatchers.list():
        table.add_row("dispatcher", url)
    for url in instances.list():
        table.add_row("instance", url)
    console.print(table)


async def main() -> None:
    args = parse_args()
    options = load_options(args.config)
    configure_logging(options.log_level, options.log_format)
    logger = structlog.get_logger(__name__)
    console = Console()

    instances = Instances(options=options)
    try:
        if args.single:
            master = await instances.spawn()
        elif args.light:
            master = await instances.light_grid_spawn(args.grid_size)
        else:
            master = await instances.grid_spawn(args.grid_size)

        logger.info("grid_ready", master=master.url, token=instances.token_for(master))
        render(console, instances)
        await asyncio.Event().wait()
    finally:
        await instances.killall()
        await instances.dispatchers.killall()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
