"""
Seed script — install the default rate rule set.

Usage (from backend/):
    python -m scripts.seed_default_rules

This will:
  1. Check whether rate_rules already holds any rule
  2. If empty, insert the defaults below
  3. Print what was inserted

Running it twice is harmless: a non-empty table is left untouched.
"""

import asyncio
from typing import Any

from quotaguard.core.database import async_session_factory, engine
from quotaguard.services.records import RateRule, RuleTarget
from quotaguard.stores.base import PolicyStore
from quotaguard.stores.sql import SqlPolicyStore

# Higher priority wins; role rules only apply to principals with that role.
DEFAULT_RULES: list[dict[str, Any]] = [
    {
        "name": "Default - Anonymous",
        "endpoint_pattern": "*",
        "identifier_type": RuleTarget.IP,
        "requests_per_minute": 30,
        "requests_per_hour": 500,
        "requests_per_day": 5_000,
        "priority": 0,
    },
    {
        "name": "Default - Authenticated",
        "endpoint_pattern": "*",
        "identifier_type": RuleTarget.USER,
        "requests_per_minute": 60,
        "requests_per_hour": 1_000,
        "requests_per_day": 10_000,
        "priority": 10,
    },
    {
        "name": "Default - Admin",
        "endpoint_pattern": "*",
        "identifier_type": RuleTarget.ROLE,
        "role": "administrator",
        "requests_per_minute": 120,
        "requests_per_hour": 2_000,
        "requests_per_day": 20_000,
        "priority": 20,
    },
    {
        "name": "Auth Endpoints",
        "endpoint_pattern": "/v1/auth/*",
        "identifier_type": RuleTarget.IP,
        "requests_per_minute": 5,
        "requests_per_hour": 20,
        "requests_per_day": 100,
        "priority": 100,
    },
    {
        "name": "Search Endpoints",
        "endpoint_pattern": "*/search",
        "identifier_type": RuleTarget.USER,
        "requests_per_minute": 20,
        "requests_per_hour": 200,
        "requests_per_day": 2_000,
        "priority": 50,
    },
    {
        "name": "Export Endpoints",
        "endpoint_pattern": "*/export",
        "identifier_type": RuleTarget.USER,
        "requests_per_minute": 5,
        "requests_per_hour": 20,
        "requests_per_day": 100,
        "priority": 50,
    },
]


async def seed_default_rules(policies: PolicyStore) -> list[RateRule]:
    """Insert DEFAULT_RULES if no rule exists yet. Returns the rules created."""
    if await policies.list_rules():
        return []
    return [await policies.create_rule(**fields) for fields in DEFAULT_RULES]


async def main() -> None:
    policies = SqlPolicyStore(async_session_factory, engine.dialect.name)
    created = await seed_default_rules(policies)

    # ── Print results ───────────────────────────────────────
    print()
    print("=" * 60)
    print("  Default Rate Rules")
    print("=" * 60)
    print()
    if not created:
        print("  rate_rules is not empty — nothing inserted.")
    for rule in created:
        print(
            f"  #{rule.id:<3} {rule.name:<26} {rule.endpoint_pattern:<12} "
            f"{rule.requests_per_minute}/min  prio {rule.priority}"
        )
    print()
    print("=" * 60)
    print()

    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
