from __future__ import annotations

import pytest

from app.models.billing import PaymentProvider, Subscription
from app.modules.billing.domain.billing.tenant_resolver import (
    lock_organization,
    resolve_tenant,
)
from app.shared.core.exceptions import UnresolvableTenant


async def _seed_subscription(db, org, **fields) -> Subscription:
    subscription = Subscription(
        org_id=org.id,
        provider=fields.pop("provider", "PAYSTACK"),
        plan_code=fields.pop("plan_code", "growth"),
        status="ACTIVE",
        **fields,
    )
    db.add(subscription)
    await db.commit()
    return subscription


@pytest.mark.asyncio
async def test_metadata_wins(db, make_event) -> None:
    tenant = await resolve_tenant(db, make_event(org_id="org-meta", plan_code="pro"))
    assert (tenant.org_id, tenant.plan_code, tenant.source) == ("org-meta", "pro", "metadata")


@pytest.mark.asyncio
async def test_fallback_by_external_sub_id(db, create_org, make_event) -> None:
    org = await create_org("org-sub")
    await _seed_subscription(db, org, external_sub_id="SUB_1", external_customer_id="CUS_other")

    event = make_event(org_id=None, plan_code=None, external_sub_id="SUB_1")
    tenant = await resolve_tenant(db, event)

    assert (tenant.org_id, tenant.plan_code, tenant.source) == ("org-sub", "growth", "external_sub_id")


@pytest.mark.asyncio
async def test_fallback_by_external_customer_id(db, create_org, make_event) -> None:
    org = await create_org("org-cus")
    await _seed_subscription(db, org, external_customer_id="CUS_abc")

    event = make_event(org_id="org-cus", plan_code=None, external_sub_id="SUB_unknown")
    tenant = await resolve_tenant(db, event)

    assert tenant.org_id == "org-cus"
    assert tenant.source == "external_customer_id"


@pytest.mark.asyncio
async def test_fallback_ignores_other_provider_rows(db, create_org, make_event) -> None:
    org = await create_org("org-flw")
    await _seed_subscription(db, org, provider="FLW", external_sub_id="SUB_1")

    event = make_event(org_id=None, plan_code=None, external_sub_id="SUB_1", external_customer_id=None)
    with pytest.raises(UnresolvableTenant):
        await resolve_tenant(db, event)


@pytest.mark.asyncio
async def test_unresolvable_tenant(db, make_event) -> None:
    event = make_event(
        provider=PaymentProvider.FLUTTERWAVE,
        org_id=None,
        plan_code=None,
        external_customer_id=None,
    )
    with pytest.raises(UnresolvableTenant) as exc_info:
        await resolve_tenant(db, event)
    assert exc_info.value.status_code == 400
    assert exc_info.value.message == "Missing subscription identifiers"


@pytest.mark.asyncio
async def test_lock_organization(db, create_org) -> None:
    await create_org("org-lock")
    org = await lock_organization(db, "org-lock")
    assert org is not None and org.id == "org-lock"
    assert await lock_organization(db, "org-missing") is None
