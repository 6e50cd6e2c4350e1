"""Pydantic models for the HTTP API."""

from typing import Literal

from pydantic import BaseModel, Field

from creditgate.core.billing.plans import PlanType

# Longest accepted prompt, in characters
PROXY_MESSAGE_MAX_LENGTH = 10_000


class HistoryPart(BaseModel):
    text: str = Field(default="", description="Text content of the part")


class HistoryItem(BaseModel):
    """A single prior message, in the Gemini chat shape."""

    role: Literal["user", "model"] = Field(description="Message sender role")
    parts: list[HistoryPart] = Field(default_factory=list)

    @property
    def text(self) -> str:
        return self.parts[0].text if self.parts else ""


class ProxyRequest(BaseModel):
    """Request model for the metered AI endpoint."""

    message: str = Field(
        min_length=1,
        max_length=PROXY_MESSAGE_MAX_LENGTH,
        description="User prompt",
    )
    history: list[HistoryItem] = Field(
        default_factory=list,
        description="Previous conversation messages for context",
    )
    model: str | None = Field(default=None, description="Model name; server default when omitted")


class ProxyUsage(BaseModel):
    tokens_used: int = Field(description="Tokens billed by the upstream, or the reply length")


class ProxyResponse(BaseModel):
    text: str
    model: str
    usage: ProxyUsage


class QuotaInfo(BaseModel):
    today: int = Field(description="Metered calls made today (UTC)")
    limit: int = Field(description="Daily allowance for the current plan")


class SubscriptionInfo(BaseModel):
    plan: str | None = None
    status: str | None = None


class QuotaResponse(BaseModel):
    quota: QuotaInfo
    credits: int
    subscription: SubscriptionInfo
    plan_type: PlanType


class UsageReport(BaseModel):
    date: str
    usage: dict[str, int]


class WebhookAck(BaseModel):
    received: bool = True
    status: str


class HealthResponse(BaseModel):
    status: Literal["ok"] = "ok"
