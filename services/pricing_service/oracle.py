"""
Advisory price suggestions.

The LLM oracle is only advisory: every failure (transport, refusal, malformed
JSON) turns into a deterministic rule-based suggestion, and the result says
which of the two the caller got.
"""
import math
import re
from dataclasses import dataclass
from typing import Protocol, Union

import structlog
from langchain_core.prompts import ChatPromptTemplate
from langchain_openai import ChatOpenAI
from pydantic import BaseModel

from shared.config import settings
from .schemas import MarketData, PricingInput

logger = structlog.get_logger(__name__)

_CODE_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$")

pricing_prompt = ChatPromptTemplate.from_messages([
    (
        "system",
        """
You are a healthcare pricing expert for a B2B marketplace in Libya.
Answer with a single JSON object and nothing else. The object has the keys
suggestedPrice (number), minPrice (number) and reasoning (short string).
        """,
    ),
    ("human", "{request}"),
])


@dataclass(frozen=True)
class PriceSuggestion:
    suggested_price: float
    min_price: float
    reasoning: str


@dataclass(frozen=True)
class OracleSuggestion:
    suggestion: PriceSuggestion
    source: str = "oracle"


@dataclass(frozen=True)
class FallbackSuggestion:
    suggestion: PriceSuggestion
    error: str | None = None
    source: str = "fallback"


SuggestionResult = Union[OracleSuggestion, FallbackSuggestion]


class PricingOracle(Protocol):
    async def suggest(self, prompt: str) -> str:
        """Return the raw text answer for a pricing prompt."""
        ...


class LLMPricingOracle:
    def __init__(self, model: str = settings.PRICING_MODEL, temperature: float = 0.3):
        self.model = model
        self.temperature = temperature
        self._llm = None

    @property
    def llm(self) -> ChatOpenAI:
        # Created on first use so the app starts without OPENAI_API_KEY
        if self._llm is None:
            self._llm = ChatOpenAI(model=self.model, temperature=self.temperature)
        return self._llm

    async def suggest(self, prompt: str) -> str:
        chain = pricing_prompt | self.llm
        response = await chain.ainvoke({"request": prompt})
        return response.content


class _OracleReply(BaseModel):
    suggestedPrice: float
    minPrice: float
    reasoning: str


def build_prompt(data: PricingInput, market: MarketData, complexity_score: float) -> str:
    return f"""
Analyze the following service and provide optimal pricing recommendations.

Service Details:
- Name: {data.service_name}
- Description: {data.service_description or 'Not provided'}
- ICD-11 Code: {data.icd11_code or 'Not specified'}
- Quantity: {data.quantity}
- Region: {data.region}
- Complexity Score (1-4): {complexity_score}

Market Data:
- Average Price: {market.average_price} {data.currency}
- Price Range: {market.min_price} - {market.max_price} {data.currency}
- Market Trend: {market.trend}

Consider service complexity, market competition, regional economic factors,
healthcare accessibility and quality standards.
"""


def parse_suggestion(text: str) -> PriceSuggestion:
    """Parse the oracle answer. Raises ValueError on anything but a usable
    JSON object."""
    reply = _OracleReply.model_validate_json(_CODE_FENCE_RE.sub("", text.strip()))
    if not (math.isfinite(reply.suggestedPrice) and math.isfinite(reply.minPrice)):
        raise ValueError("Oracle returned a non-finite price")
    if reply.minPrice < 0 or reply.suggestedPrice < 0:
        raise ValueError("Oracle returned a negative price")
    return PriceSuggestion(reply.suggestedPrice, reply.minPrice, reply.reasoning)


def fallback_suggestion(data: PricingInput, market: MarketData, complexity_score: float) -> PriceSuggestion:
    quantity_factor = 0.9 if data.quantity > 10 else 1.0
    suggested = market.average_price * complexity_score * 1.5 * quantity_factor
    return PriceSuggestion(
        suggested_price=suggested,
        min_price=suggested * 0.7,
        reasoning=(
            f"Rule-based pricing: Complexity factor {complexity_score}, "
            f"market adjustment applied, quantity discount {quantity_factor}"
        ),
    )


async def get_price_suggestion(
    oracle: PricingOracle | None,
    data: PricingInput,
    market: MarketData,
    complexity_score: float,
) -> SuggestionResult:
    if oracle is None:
        return FallbackSuggestion(fallback_suggestion(data, market, complexity_score), error="no oracle configured")

    try:
        text = await oracle.suggest(build_prompt(data, market, complexity_score))
        return OracleSuggestion(parse_suggestion(text))
    except Exception as e:
        logger.warning("pricing_oracle_fallback", service_name=data.service_name, error=str(e))
        return FallbackSuggestion(fallback_suggestion(data, market, complexity_score), error=str(e))
