from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from tenantplane.core.config import Settings, get_settings
from tenantplane.core.errors import BootstrapError
from tenantplane.domain.provisioning import BootstrapResult, ProvisioningConfig, utc_now
from tenantplane.providers.identity.base import IdentityProvider
from tenantplane.services.provisioning.provisioner import AccountProvisioner
from tenantplane.services.routing import MultiTenantRouter


logger = logging.getLogger(__name__)

# Deterministic identifiers make the day-0 data idempotent across runs.
FIXED_IDS = {
    "ACCOUNT": "a0000000-0000-0000-0000-000000000001",
    "ENTERPRISE": "00000000-0000-0000-0000-000000000001",
    "PRODUCT": "00000000-0000-0000-0000-000000000002",
    "SERVICE": "00000000-0000-0000-0000-000000000003",
    "PLATFORM_GROUP": "b0000000-0000-0000-0000-000000000001",
    "PLATFORM_ROLE": "c0000000-0000-0000-0000-000000000001",
    "TECHNICAL_GROUP": "b0000000-0000-0000-0000-000000000002",
    "TECHNICAL_ROLE": "c0000000-0000-0000-0000-000000000002",
    "ADMIN_USER": "d0000000-0000-0000-0000-000000000001",
    "DEFAULT_WORKSTREAM": "e0000000-0000-0000-0000-000000000001",
    "LICENSE": "f0000000-0000-0000-0000-000000000001",
    "ADDRESS": "f1000000-0000-0000-0000-000000000001",
}

DEFAULT_ACCOUNT_NAME = "ABC"

MENU_ITEMS = [
    ("dashboard", "Dashboard"),
    ("overview", "Overview"),
    ("account-settings", "Account Settings"),
    ("access-control", "Access Control"),
    ("security", "Security & Governance"),
    ("pipelines", "Pipelines"),
    ("builds", "Builds"),
]

MENU_TABS = {
    "account-settings": [
        ("enterprises", "Enterprise"),
        ("accounts", "Accounts"),
        ("global-settings", "Global Settings"),
    ],
    "access-control": [
        ("users", "Users"),
        ("groups", "Groups"),
        ("roles", "Roles"),
    ],
}

# DynamoDB transactions accept a bounded number of items; stay well under it.
TRANSACT_BATCH_SIZE = 25


def _put(item: dict[str, Any]) -> dict[str, Any]:
    return {"Put": {"Item": item}}


def tabs_for_menu(menu_key: str, full_access: bool) -> list[dict[str, Any]]:
    return [
        {
            "key": key,
            "label": label,
            "isVisible": True,
            "canView": True,
            "canCreate": full_access,
            "canEdit": full_access,
            "canDelete": full_access,
        }
        for key, label in MENU_TABS.get(menu_key, [])
    ]


def permission_items(role_id: str, full_access: bool, now: str) -> list[dict[str, Any]]:
    return [
        _put(
            {
                "PK": f"ROLE#{role_id}",
                "SK": f"PERMISSION#{menu_key}",
                "id": str(uuid.uuid4()),
                "roleId": role_id,
                "menuKey": menu_key,
                "menuLabel": menu_label,
                "isVisible": True,
                "canView": True,
                "canCreate": full_access,
                "canEdit": full_access,
                "canDelete": full_access,
                "tabs": tabs_for_menu(menu_key, full_access),
                "createdAt": now,
                "updatedAt": now,
            }
        )
        for menu_key, menu_label in MENU_ITEMS
    ]


@dataclass(frozen=True)
class BootstrapStep:
    name: str
    detail: str
    run: Callable[[str], Awaitable[str | None]]


class BootstrapSequencer:
    """Seed the shared store with the platform's day-0 entities, exactly once."""

    def __init__(
        self,
        router: MultiTenantRouter,
        provisioner: AccountProvisioner,
        identity: IdentityProvider | None = None,
        *,
        settings: Settings | None = None,
    ) -> None:
        self._router = router
        self._provisioner = provisioner
        self._identity = identity
        self._settings = settings or get_settings()

    @property
    def admin_email(self) -> str:
        return self._settings.bootstrap_admin_email

    def steps(self) -> list[BootstrapStep]:
        return [
            BootstrapStep("master_data", "Created Global Product and Global Service", self._create_master_data),
            BootstrapStep(
                "enterprise",
                "Created Global Enterprise with Product/Service linkage",
                self._create_enterprise,
            ),
            BootstrapStep("account", f"Created {DEFAULT_ACCOUNT_NAME} Account (Public Cloud)", self._create_account),
            BootstrapStep(
                "provisioning_registration",
                f"Registered {DEFAULT_ACCOUNT_NAME} Account routing facts",
                self._register_provisioning,
            ),
            BootstrapStep("license", "Created Global License (100 users)", self._create_license),
            BootstrapStep("groups", "Created Platform Admin Group and Technical Group", self._create_groups),
            BootstrapStep(
                "roles",
                "Created Platform Role (full access) and Technical Role (base access)",
                self._create_roles,
            ),
            BootstrapStep(
                "role_links",
                "Linked Platform Role to Platform Admin Group and Technical Role to Technical Group",
                self._link_roles,
            ),
            BootstrapStep("admin_user", f"Created admin technical user ({self.admin_email})", self._create_admin_user),
            BootstrapStep("admin_group_link", "Assigned admin user to Platform Admin Group", self._assign_admin_group),
            BootstrapStep("workstream", "Created Default Workstream (Global)", self._create_workstream),
            BootstrapStep("identity_admin", "Provisioned admin in identity provider", self._provision_identity),
        ]

    async def is_bootstrapped(self) -> bool:
        response = await self._router.admin_get(Key={"PK": f"ACCOUNT#{FIXED_IDS['ACCOUNT']}", "SK": "METADATA"})
        return bool(response.get("Item"))

    async def run(self) -> BootstrapResult:
        if await self.is_bootstrapped():
            logger.info("bootstrap_skipped reason=already_bootstrapped")
            return BootstrapResult(
                success=True,
                message="Platform already bootstrapped",
                details=["Bootstrap data already exists"],
            )
        logger.info("bootstrap_started")
        now = utc_now().isoformat()
        details: list[str] = []
        completed: list[str] = []
        for step in self.steps():
            try:
                # A step may replace its default detail line, e.g. when it was skipped.
                detail = await step.run(now)
            except Exception as exc:  # noqa: BLE001 - reported in the result, earlier steps stay
                error = BootstrapError(step.name, str(exc), completed)
                logger.error("bootstrap_failed step=%s error=%s", step.name, exc)
                return BootstrapResult(
                    success=False,
                    message=str(error),
                    details=details,
                    completed_steps=error.completed_steps,
                    failed_step=step.name,
                )
            details.append(detail or step.detail)
            completed.append(step.name)
            logger.info("bootstrap_step_completed step=%s", step.name)
        logger.info("bootstrap_completed steps=%d", len(completed))
        return BootstrapResult(
            success=True,
            message="Platform bootstrapped successfully",
            details=details,
            completed_steps=completed,
        )

    async def _transact(self, operations: list[dict[str, Any]]) -> None:
        for offset in range(0, len(operations), TRANSACT_BATCH_SIZE):
            await self._router.admin_transact_write(operations[offset : offset + TRANSACT_BATCH_SIZE])

    async def _create_master_data(self, now: str) -> None:
        product, service = FIXED_IDS["PRODUCT"], FIXED_IDS["SERVICE"]
        await self._transact(
            [
                _put(
                    {
                        "PK": f"PRODUCT#{product}",
                        "SK": "METADATA",
                        "GSI1PK": "ENTITY#PRODUCT",
                        "GSI1SK": f"PRODUCT#{product}",
                        "id": product,
                        "name": "Global",
                        "description": "Default global product",
                        "createdAt": now,
                    }
                ),
                _put(
                    {
                        "PK": f"SERVICE#{service}",
                        "SK": "METADATA",
                        "GSI1PK": "ENTITY#SERVICE",
                        "GSI1SK": f"SERVICE#{service}",
                        "id": service,
                        "name": "Global",
                        "description": "Default global service",
                        "createdAt": now,
                    }
                ),
            ]
        )

    async def _create_enterprise(self, now: str) -> None:
        enterprise = FIXED_IDS["ENTERPRISE"]
        await self._transact(
            [
                _put(
                    {
                        "PK": f"ENTERPRISE#{enterprise}",
                        "SK": "METADATA",
                        "GSI1PK": "ENTITY#ENTERPRISE",
                        "GSI1SK": f"ENTERPRISE#{enterprise}",
                        "id": enterprise,
                        "name": "Global",
                        "createdAt": now,
                        "updatedAt": now,
                    }
                ),
                _put(
                    {
                        "PK": f"ENTERPRISE#{enterprise}",
                        "SK": f"PRODUCT#{FIXED_IDS['PRODUCT']}",
                        "enterpriseId": enterprise,
                        "productId": FIXED_IDS["PRODUCT"],
                        "createdAt": now,
                    }
                ),
                _put(
                    {
                        "PK": f"ENTERPRISE#{enterprise}",
                        "SK": f"SERVICE#{FIXED_IDS['SERVICE']}",
                        "enterpriseId": enterprise,
                        "serviceId": FIXED_IDS["SERVICE"],
                        "createdAt": now,
                    }
                ),
            ]
        )

    async def _create_account(self, now: str) -> None:
        account = FIXED_IDS["ACCOUNT"]
        await self._transact(
            [
                _put(
                    {
                        "PK": f"ACCOUNT#{account}",
                        "SK": "METADATA",
                        "GSI1PK": "ENTITY#ACCOUNT",
                        "GSI1SK": f"ACCOUNT#{account}",
                        "GSI2PK": "CLOUD_TYPE#PUBLIC",
                        "GSI2SK": f"ACCOUNT#{account}",
                        "id": account,
                        "name": DEFAULT_ACCOUNT_NAME,
                        "masterAccountName": DEFAULT_ACCOUNT_NAME,
                        "cloudType": "public",
                        "status": "active",
                        "createdAt": now,
                        "updatedAt": now,
                    }
                ),
                _put(
                    {
                        "PK": f"ACCOUNT#{account}",
                        "SK": f"ADDRESS#{FIXED_IDS['ADDRESS']}",
                        "id": FIXED_IDS["ADDRESS"],
                        "accountId": account,
                        "line1": "123 Platform Street",
                        "line2": "Suite 100",
                        "city": "San Francisco",
                        "state": "CA",
                        "postalCode": "94105",
                        "country": "United States",
                        "createdAt": now,
                    }
                ),
            ]
        )

    async def _register_provisioning(self, now: str) -> str | None:
        _ = now
        config = ProvisioningConfig(
            account_id=FIXED_IDS["ACCOUNT"],
            account_name=DEFAULT_ACCOUNT_NAME,
            cloud_type="public",
        )
        try:
            await self._provisioner.provision_account(config)
        except Exception as exc:  # noqa: BLE001 - parameter store may not be configured yet
            logger.warning("bootstrap_provisioning_skipped error=%s", exc)
            return f"Provisioning registration skipped: {exc}"
        return None

    async def _create_license(self, now: str) -> None:
        account, license_id = FIXED_IDS["ACCOUNT"], FIXED_IDS["LICENSE"]
        await self._router.admin_put(
            Item={
                "PK": f"ACCOUNT#{account}",
                "SK": f"LICENSE#{license_id}",
                "GSI1PK": "ENTITY#LICENSE",
                "GSI1SK": f"LICENSE#{license_id}",
                "GSI2PK": f"ENTERPRISE#{FIXED_IDS['ENTERPRISE']}",
                "GSI2SK": f"LICENSE#{license_id}",
                "GSI3PK": "LICENSE#STATUS#active",
                "GSI3SK": f"2099-12-31#{license_id}",
                "id": license_id,
                "accountId": account,
                "enterpriseId": FIXED_IDS["ENTERPRISE"],
                "productId": FIXED_IDS["PRODUCT"],
                "serviceId": FIXED_IDS["SERVICE"],
                "startDate": now.split("T")[0],
                "endDate": "2099-12-31",
                "numberOfUsers": 100,
                "renewalNotify": True,
                "noticeDays": 30,
                "contactFullName": "ABC DEF",
                "contactEmail": self.admin_email,
                "createdAt": now,
                "updatedAt": now,
            }
        )

    def _group_item(self, group_id: str, name: str, description: str, now: str) -> dict[str, Any]:
        return _put(
            {
                "PK": f"GROUP#{group_id}",
                "SK": "METADATA",
                "GSI1PK": "ENTITY#GROUP",
                "GSI1SK": f"GROUP#{group_id}",
                "id": group_id,
                "name": name,
                "description": description,
                "accountId": FIXED_IDS["ACCOUNT"],
                "enterpriseId": FIXED_IDS["ENTERPRISE"],
                "workstreamId": FIXED_IDS["DEFAULT_WORKSTREAM"],
                "createdAt": now,
                "updatedAt": now,
            }
        )

    async def _create_groups(self, now: str) -> None:
        await self._transact(
            [
                self._group_item(
                    FIXED_IDS["PLATFORM_GROUP"], "Platform Admin", "Full platform administration access", now
                ),
                self._group_item(
                    FIXED_IDS["TECHNICAL_GROUP"],
                    "Technical Group",
                    "Default technical user group for customer accounts",
                    now,
                ),
            ]
        )

    def _role_item(self, role_id: str, name: str, description: str, now: str) -> dict[str, Any]:
        return _put(
            {
                "PK": f"ROLE#{role_id}",
                "SK": "METADATA",
                "GSI1PK": "ENTITY#ROLE",
                "GSI1SK": f"ROLE#{role_id}",
                "id": role_id,
                "name": name,
                "description": description,
                "permissions": 0,
                "accountId": FIXED_IDS["ACCOUNT"],
                "enterpriseId": FIXED_IDS["ENTERPRISE"],
                "workstreamId": FIXED_IDS["DEFAULT_WORKSTREAM"],
                "productId": FIXED_IDS["PRODUCT"],
                "serviceId": FIXED_IDS["SERVICE"],
                "createdAt": now,
                "updatedAt": now,
            }
        )

    async def _create_roles(self, now: str) -> None:
        await self._transact(
            [
                self._role_item(
                    FIXED_IDS["PLATFORM_ROLE"],
                    "Platform Role",
                    "Full application access for platform administrators",
                    now,
                ),
                self._role_item(
                    FIXED_IDS["TECHNICAL_ROLE"],
                    "Technical Role",
                    "Base access for technical users in customer accounts",
                    now,
                ),
            ]
        )
        await self._transact(permission_items(FIXED_IDS["PLATFORM_ROLE"], True, now))
        # Technical users can view every menu but change nothing.
        await self._transact(permission_items(FIXED_IDS["TECHNICAL_ROLE"], False, now))

    async def _link_roles(self, now: str) -> None:
        links = [
            (FIXED_IDS["PLATFORM_GROUP"], FIXED_IDS["PLATFORM_ROLE"]),
            (FIXED_IDS["TECHNICAL_GROUP"], FIXED_IDS["TECHNICAL_ROLE"]),
        ]
        await self._transact(
            [
                _put(
                    {
                        "PK": f"GROUP#{group_id}",
                        "SK": f"ROLE#{role_id}",
                        "id": str(uuid.uuid4()),
                        "groupId": group_id,
                        "roleId": role_id,
                        "createdAt": now,
                    }
                )
                for group_id, role_id in links
            ]
        )

    async def _create_admin_user(self, now: str) -> None:
        user, account = FIXED_IDS["ADMIN_USER"], FIXED_IDS["ACCOUNT"]
        profile = {
            "id": user,
            "accountId": account,
            "enterpriseId": FIXED_IDS["ENTERPRISE"],
            "firstName": "ABC",
            "lastName": "DEF",
            "email": self.admin_email,
            "assignedRole": "Platform Role",
            "assignedGroup": "Platform Admin",
            "startDate": now.split("T")[0],
            "status": "active",
            "isTechnicalUser": True,
            "createdAt": now,
            "updatedAt": now,
        }
        await self._transact(
            [
                _put(
                    {
                        "PK": f"ACCOUNT#{account}",
                        "SK": f"TECH_USER#{user}",
                        "GSI1PK": "ENTITY#TECH_USER",
                        "GSI1SK": f"USER#{user}",
                        **profile,
                    }
                ),
                _put(
                    {
                        "PK": f"USER#{user}",
                        "SK": "METADATA",
                        "GSI1PK": "ENTITY#USER",
                        "GSI1SK": f"USER#{user}",
                        "GSI2PK": f"ACCOUNT#{account}#USERS",
                        "GSI2SK": f"USER#{user}",
                        **profile,
                    }
                ),
            ]
        )

    async def _assign_admin_group(self, now: str) -> None:
        await self._router.admin_put(
            Item={
                "PK": f"USER#{FIXED_IDS['ADMIN_USER']}",
                "SK": f"GROUP#{FIXED_IDS['PLATFORM_GROUP']}",
                "id": str(uuid.uuid4()),
                "userId": FIXED_IDS["ADMIN_USER"],
                "groupId": FIXED_IDS["PLATFORM_GROUP"],
                "createdAt": now,
            }
        )

    async def _create_workstream(self, now: str) -> None:
        workstream = FIXED_IDS["DEFAULT_WORKSTREAM"]
        await self._router.admin_put(
            Item={
                "PK": f"ACCOUNT#{FIXED_IDS['ACCOUNT']}",
                "SK": f"WORKSTREAM#{workstream}",
                "GSI1PK": "ENTITY#WORKSTREAM",
                "GSI1SK": f"WORKSTREAM#{workstream}",
                "GSI2PK": f"ENTERPRISE#{FIXED_IDS['ENTERPRISE']}",
                "GSI2SK": f"WORKSTREAM#{workstream}",
                "id": workstream,
                "name": "Global",
                "accountId": FIXED_IDS["ACCOUNT"],
                "enterpriseId": FIXED_IDS["ENTERPRISE"],
                "createdAt": now,
                "updatedAt": now,
            }
        )
        await self._router.admin_put(
            Item={
                "PK": f"USER#{FIXED_IDS['ADMIN_USER']}",
                "SK": f"WORKSTREAM#{workstream}",
                "id": str(uuid.uuid4()),
                "userId": FIXED_IDS["ADMIN_USER"],
                "workstreamId": workstream,
                "createdAt": now,
            }
        )

    async def _provision_identity(self, now: str) -> str:
        _ = now
        if self._identity is None:
            logger.warning("bootstrap_identity_skipped reason=not_configured")
            return "Identity provisioning skipped (no identity provider configured)"
        group = self._settings.bootstrap_admin_group
        try:
            group_created = await self._identity.ensure_group(group, "Platform administrators")
            sub, user_created = await self._identity.ensure_user(
                self.admin_email,
                {
                    "given_name": "ABC",
                    "family_name": "DEF",
                    "custom:account_id": FIXED_IDS["ACCOUNT"],
                    "custom:enterprise_id": FIXED_IDS["ENTERPRISE"],
                },
            )
            await self._identity.add_user_to_group(self.admin_email, group)
        except Exception as exc:  # noqa: BLE001 - identity setup can be retried by rerunning
            logger.error("bootstrap_identity_failed error=%s", exc)
            return f"Identity provisioning failed: {exc}"
        actions = []
        if group_created:
            actions.append(f"created group {group}")
        actions.append("created admin user" if user_created else "updated admin user attributes")
        actions.append(f"added admin to {group}")
        return f"Identity provider: {', '.join(actions)} (sub: {sub})"
