"""Fire-and-forget invoice delivery.

Invoices are handed off after the ledger commit on a background task.
A failed hand-off is logged and counted; it never reaches the webhook
response and never touches the ledger.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator
from dataclasses import asdict, dataclass
from datetime import timedelta
from typing import Annotated, Protocol

import httpx
from fastapi import Depends, FastAPI

from creditgate.configs.config import AppConfig, get_app_config
from creditgate.core.metrics import INVOICE_DISPATCH_TOTAL
from creditgate.infra.lifespan import get_app

logger = logging.getLogger(__name__)

_SHUTDOWN_GRACE = 5.0


@dataclass(frozen=True)
class InvoiceRequest:
    user_id: str
    email: str
    event_key: str
    amount: int
    currency: str
    credits: int
    plan_name: str
    transaction_type: str


class InvoiceSender(Protocol):
    async def send(self, invoice: InvoiceRequest) -> None: ...

    async def aclose(self) -> None: ...


class LoggingInvoiceSender:
    """Used when no renderer is configured."""

    async def send(self, invoice: InvoiceRequest) -> None:
        logger.info(
            "Invoice for %s (%s): %d %s, %d credits",
            invoice.user_id,
            invoice.event_key,
            invoice.amount,
            invoice.currency,
            invoice.credits,
        )

    async def aclose(self) -> None:
        pass


class HttpInvoiceSender:
    """POSTs the invoice as JSON to an external renderer."""

    def __init__(self, url: str, timeout: timedelta) -> None:
        self._url = url
        self._client = httpx.AsyncClient(timeout=timeout.total_seconds())

    async def send(self, invoice: InvoiceRequest) -> None:
        response = await self._client.post(self._url, json=asdict(invoice))
        response.raise_for_status()

    async def aclose(self) -> None:
        await self._client.aclose()


class InvoiceDispatcher:
    """Runs invoice sends as tracked background tasks."""

    def __init__(self, sender: InvoiceSender) -> None:
        self._sender = sender
        self._tasks: set[asyncio.Task[None]] = set()

    def submit(self, invoice: InvoiceRequest) -> asyncio.Task[None]:
        task = asyncio.create_task(self._deliver(invoice))
        # Keep a strong reference until the task finishes.
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _deliver(self, invoice: InvoiceRequest) -> None:
        try:
            await self._sender.send(invoice)
        except Exception:
            INVOICE_DISPATCH_TOTAL.labels(status="error").inc()
            logger.exception(
                "Invoice delivery failed for %s (%s)", invoice.user_id, invoice.event_key
            )
            return
        INVOICE_DISPATCH_TOTAL.labels(status="ok").inc()

    async def drain(self) -> None:
        """Wait for every submitted invoice to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks))

    async def aclose(self) -> None:
        try:
            async with asyncio.timeout(_SHUTDOWN_GRACE):
                await self.drain()
        except TimeoutError:
            logger.warning("%d invoice(s) still pending at shutdown", len(self._tasks))
        await self._sender.aclose()


# ---------------------------------------------------------------------------
# Lifespan dependency
# ---------------------------------------------------------------------------


async def build_invoice_dispatcher(
    app: Annotated[FastAPI, Depends(get_app)],
    config: Annotated[AppConfig, Depends(get_app_config)],
) -> AsyncGenerator[None, None]:
    billing = config.billing
    sender: InvoiceSender
    if billing.invoice_webhook_url:
        sender = HttpInvoiceSender(billing.invoice_webhook_url, billing.invoice_timeout)
        logger.info("Invoices: HTTP hand-off to %s", billing.invoice_webhook_url)
    else:
        sender = LoggingInvoiceSender()
        logger.info("Invoices: no renderer configured, logging only")
    dispatcher = InvoiceDispatcher(sender)
    app.state.invoice_dispatcher = dispatcher
    yield
    await dispatcher.aclose()
