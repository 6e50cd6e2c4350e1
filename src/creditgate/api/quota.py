"""Quota lookup and the admin usage report."""

import secrets
from datetime import date, datetime, timezone
from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, Query

from creditgate.core.limits.guards import endpoint_limit
from creditgate.infra.identity import USER_ID_HEADER

from .deps import AppConfigDep, CreditLedgerDep, QuotaTrackerDep
from .models import QuotaInfo, QuotaResponse, SubscriptionInfo, UsageReport

router = APIRouter(prefix="/api", tags=["quota"])


@router.get("/quota", response_model=QuotaResponse)
async def get_quota(
    config: AppConfigDep,
    quota: QuotaTrackerDep,
    ledger: CreditLedgerDep,
    user_id: Annotated[str | None, Header(alias=USER_ID_HEADER)] = None,
) -> QuotaResponse:
    """Today's usage, balance and derived plan for the calling user."""
    user_id = (user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Authentication required")

    used = await quota.get_daily_usage(user_id)
    account = await ledger.get_account(user_id)
    if account is None:
        plan_type, credits, subscription = "free", 0, SubscriptionInfo()
    else:
        plan_type = account.plan_type
        credits = account.credits_balance
        subscription = SubscriptionInfo(
            plan=account.subscription_plan, status=account.subscription_status
        )

    limit = (
        config.quota.free_daily_limit
        if plan_type == "free"
        else config.quota.paid_daily_limit
    )
    return QuotaResponse(
        quota=QuotaInfo(today=used, limit=limit),
        credits=credits,
        subscription=subscription,
        plan_type=plan_type,
    )


def _parse_day(raw: str | None) -> date:
    if not raw:
        return datetime.now(timezone.utc).date()
    try:
        parsed = date.fromisoformat(raw.strip())
    except ValueError:
        parsed = None
    # fromisoformat also takes YYYYMMDD; only the dashed form is accepted
    if parsed is None or parsed.isoformat() != raw.strip():
        raise HTTPException(status_code=400, detail="Invalid date format. Use YYYY-MM-DD")
    return parsed


@router.get(
    "/admin/usage",
    response_model=UsageReport,
    dependencies=[Depends(endpoint_limit("admin_usage"))],
)
async def admin_usage(
    config: AppConfigDep,
    quota: QuotaTrackerDep,
    token: Annotated[str | None, Header(alias="x-admin-token")] = None,
    day: Annotated[str | None, Query(alias="date")] = None,
) -> UsageReport:
    """Per-identity metered calls for one UTC day."""
    expected = config.admin.usage_token.strip()
    supplied = (token or "").strip()
    if not expected or not secrets.compare_digest(supplied.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Unauthorized")

    target = _parse_day(day)
    usage = await quota.usage_for_date(target)
    return UsageReport(date=target.isoformat(), usage=usage)
