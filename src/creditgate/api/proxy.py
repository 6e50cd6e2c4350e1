"""Metered AI endpoint."""

import logging

from fastapi import APIRouter

from creditgate.core.billing.base import InsufficientCredits
from creditgate.core.metered.client import Turn

from .deps import AdmissionDep, CreditLedgerDep, MeteredClientDep, QuotaTrackerDep
from .models import ProxyRequest, ProxyResponse, ProxyUsage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/ai", tags=["ai"])


@router.post("/proxy", response_model=ProxyResponse)
async def proxy(
    body: ProxyRequest,
    admission: AdmissionDep,
    client: MeteredClientDep,
    quota: QuotaTrackerDep,
    ledger: CreditLedgerDep,
) -> ProxyResponse:
    """Forward one prompt to the upstream model.

    Runs only after every limit admitted the call and while a
    concurrency slot is held.  Usage is counted after a successful
    upstream answer; ``credits`` plans also spend one credit.
    """
    identity = admission.identity
    history = [Turn(role=item.role, text=item.text) for item in body.history]
    completion = await client.generate(body.message, history, body.model)

    await quota.increment_daily_usage(identity.key)
    if admission.plan_type == "credits" and identity.account_id is not None:
        try:
            await ledger.consume_credit(identity.account_id)
        except InsufficientCredits:
            # Balance hit zero between admission and answer; the reply
            # is already paid for upstream, so it is still returned.
            logger.warning("Credit balance of %s ran out mid-call", identity.account_id)

    return ProxyResponse(
        text=completion.text,
        model=completion.model,
        usage=ProxyUsage(tokens_used=completion.tokens_used),
    )
