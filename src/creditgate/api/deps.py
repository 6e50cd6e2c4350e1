"""Centralized FastAPI dependency type aliases.

Import these ``*Dep`` aliases in route modules instead of manually
writing ``Annotated[T, Depends(get_xxx)]`` everywhere.  Each alias
corresponds to a single ``get_*`` factory and can be overridden in
tests via ``app.dependency_overrides[get_xxx] = ...``.
"""

from typing import Annotated

from fastapi import Depends

from creditgate.configs.config import AppConfig, get_app_config
from creditgate.core.billing.processor import WebhookProcessor, get_webhook_processor
from creditgate.core.billing.provider import StripeGateway, get_stripe_gateway
from creditgate.core.limits.guards import Admission, admit_metered_call, get_quota_tracker
from creditgate.core.limits.quota import QuotaTracker
from creditgate.core.metered.client import MeteredClient, get_metered_client
from creditgate.infra.db import CreditLedger, get_credit_ledger

AppConfigDep = Annotated[AppConfig, Depends(get_app_config)]
AdmissionDep = Annotated[Admission, Depends(admit_metered_call)]
QuotaTrackerDep = Annotated[QuotaTracker, Depends(get_quota_tracker)]
CreditLedgerDep = Annotated[CreditLedger, Depends(get_credit_ledger)]
MeteredClientDep = Annotated[MeteredClient, Depends(get_metered_client)]
WebhookProcessorDep = Annotated[WebhookProcessor, Depends(get_webhook_processor)]
StripeGatewayDep = Annotated[StripeGateway, Depends(get_stripe_gateway)]
