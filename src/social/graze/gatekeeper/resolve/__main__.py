from typing import List
import argparse
import aiohttp
import asyncio
import logging

from social.graze.gatekeeper.resolve.pool import ResolverPool
from social.graze.gatekeeper.resolve.providers import create_providers

logger = logging.getLogger(__name__)


async def realMain() -> None:
    parser = argparse.ArgumentParser(
        prog="gatekeeper-resolve", description="Resolve account names"
    )
    parser.add_argument("name", nargs="+", help="The account name(s) to resolve.")
    parser.add_argument(
        "--wpme", action="store_true", help="Also query the wpme provider."
    )
    parser.add_argument(
        "--timeout-ms",
        type=int,
        default=3000,
        help="Upper bound for racing all providers, in milliseconds.",
    )

    args = vars(parser.parse_args())

    names: List[str] = args.get("name", [])

    async with aiohttp.ClientSession() as session:
        pool = ResolverPool(
            create_providers(session, wpme_enabled=args.get("wpme", False)),
            aggregate_timeout_ms=args.get("timeout_ms", 3000),
        )
        for name in names:
            try:
                result = await pool.resolve(name)
                print(f"{name} {result.model_dump_json()}")
            except Exception:
                logging.exception("Exception resolving name %s", name)
        await pool.close()


def main() -> None:
    asyncio.run(realMain())


if __name__ == "__main__":
    main()
