from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from dataclasses import asdict

from tenantplane.core.config import get_settings
from tenantplane.core.logging import configure_logging
from tenantplane.services.container import get_container


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Seed the platform's day-0 data in the shared store")
    parser.add_argument("--admin-email", default=None, help="Override BOOTSTRAP_ADMIN_EMAIL for this run")
    parser.add_argument("--check", action="store_true", help="Only report whether bootstrap already ran")
    parser.add_argument("--json", action="store_true", help="Print the result as JSON")
    return parser


async def _run(args: argparse.Namespace) -> int:
    bootstrap = get_container().bootstrap
    if args.check:
        bootstrapped = await bootstrap.is_bootstrapped()
        print("bootstrapped" if bootstrapped else "not bootstrapped")
        return 0 if bootstrapped else 1
    result = await bootstrap.run()
    if args.json:
        print(json.dumps(asdict(result), indent=2))
    else:
        print(result.message)
        for detail in result.details:
            print(f"  - {detail}")
        if result.failed_step:
            print(f"failed step: {result.failed_step}", file=sys.stderr)
    return 0 if result.success else 1


def main() -> int:
    args = _build_parser().parse_args()
    if args.admin_email:
        # Settings are cached; override before the container is built.
        os.environ["BOOTSTRAP_ADMIN_EMAIL"] = args.admin_email
        get_settings.cache_clear()
    configure_logging()
    return asyncio.run(_run(args))


if __name__ == "__main__":
    raise SystemExit(main())
