from __future__ import annotations

import argparse
import asyncio
import json
import sys

from tenantplane.core.errors import TenantPlaneError
from tenantplane.core.logging import configure_logging
from tenantplane.services.container import get_container
from tenantplane.services.provisioning.provisioner import parse_provisioning_config


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Provision, inspect or deprovision a tenant account")
    sub = parser.add_subparsers(dest="command", required=True)

    provision = sub.add_parser("provision", help="Provision an account and wait for completion")
    provision.add_argument("--account-id", required=True)
    provision.add_argument("--account-name", required=True)
    provision.add_argument("--cloud-type", required=True, choices=["public", "private", "hybrid"])
    provision.add_argument("--billing-mode", default="PAY_PER_REQUEST", choices=["PAY_PER_REQUEST", "PROVISIONED"])
    provision.add_argument("--no-deletion-protection", action="store_true")

    status = sub.add_parser("status", help="Show durable provisioning status")
    status.add_argument("--account-id", required=True)

    deprovision = sub.add_parser("deprovision", help="Tear down an account's resources and routing facts")
    deprovision.add_argument("--account-id", required=True)
    deprovision.add_argument("--account-name", default=None)
    return parser


async def _run(args: argparse.Namespace) -> int:
    provisioner = get_container().provisioner
    if args.command == "provision":
        config = parse_provisioning_config(
            {
                "account_id": args.account_id,
                "account_name": args.account_name,
                "cloud_type": args.cloud_type,
                "billing_mode": args.billing_mode,
                "enable_deletion_protection": not args.no_deletion_protection,
            }
        )
        result = await provisioner.provision_account(config)
        print(result.message)
        if result.store_name:
            print(f"store: {result.store_name}")
        return 0
    if args.command == "status":
        status = await provisioner.get_provisioning_status(args.account_id)
        if status is None:
            print(f"no provisioning record for {args.account_id}", file=sys.stderr)
            return 1
        print(
            json.dumps(
                {
                    "account_id": status.account_id,
                    "status": status.status,
                    "cloud_type": status.cloud_type,
                    "store_name": status.store_name,
                    "stack_id": status.stack_id,
                    "error": status.error,
                },
                indent=2,
            )
        )
        return 0
    await provisioner.deprovision_account(args.account_id, args.account_name)
    print(f"Account {args.account_id} deprovisioned")
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_run(args))
    except TenantPlaneError as exc:
        print(str(exc), file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
