"""
Pass-2 prompt construction and response parsing

The prompt teaches the model that vendor names are attributes, not
categories: Stripe is payment_processing_fees with processor=Stripe.
"""
import json
import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ledgerlens.domain.categorization.exceptions import LLMResponseError
from ledgerlens.domain.categorization.schemas import Category, Industry, NormalizedTransaction, Signal
from ledgerlens.domain.categorization.taxonomy import CATCH_ALL_SLUG, Taxonomy, taxonomy as default_taxonomy

MAX_PASS1_SIGNALS = 3

INDUSTRY_DESCRIPTIONS = {
    Industry.ALL: "general",
    Industry.ECOMMERCE: "e-commerce",
    Industry.SAAS: "SaaS (Software-as-a-Service)",
    Industry.RESTAURANT: "restaurant",
    Industry.PROFESSIONAL_SERVICES: "professional services",
}


class PromptContext(BaseModel):
    transaction: NormalizedTransaction
    industry: Industry = Industry.ECOMMERCE
    pass1_category_name: Optional[str] = None
    pass1_confidence: Optional[float] = None
    pass1_signals: List[str] = Field(default_factory=list)


class LLMResponse(BaseModel):
    category_slug: str
    confidence: float = Field(0.5, ge=0.0, le=1.0)
    attributes: Dict[str, Any] = Field(default_factory=dict)
    rationale: str = "No rationale provided"


# Known misclassifications the examples steer away from
FEW_SHOT_EXAMPLES: List[Dict[str, Any]] = [
    {
        "merchant": "Stripe",
        "description": "STRIPE PAYMENT PROCESSING FEE",
        "category": "payment_processing_fees",
        "attributes": {"processor": "Stripe", "fee_type": "transaction"},
        "rationale": "Processing fee; Stripe is the processor attribute, not a category",
    },
    {
        "merchant": "Meta",
        "description": "FACEBOOK ADS MANAGER CHARGE",
        "category": "marketing_ads",
        "attributes": {"platform": "Meta", "campaign_type": "paid_social"},
        "rationale": "Digital advertising with Meta as the platform attribute",
    },
    {
        "merchant": "Adobe",
        "description": "ADOBE CREATIVE CLOUD SUBSCRIPTION",
        "category": "software_subscriptions",
        "attributes": {"vendor": "Adobe", "subscription_type": "monthly"},
        "rationale": "Software subscription; vendor name goes in attributes",
    },
    {
        "merchant": "Unknown",
        "description": "CUSTOMER REFUND - ORDER #12345",
        "category": "refunds_contra",
        "attributes": {"reason": "return"},
        "rationale": "Customer refund reduces revenue (contra-revenue), never an expense",
    },
    {
        "merchant": "Shopify",
        "description": "SHOPIFY PAYOUT",
        "category": "payouts_clearing",
        "attributes": {"platform": "Shopify"},
        "rationale": "Processor payout is a transfer of already-recorded sales, not new revenue",
    },
]

ECOMMERCE_EXAMPLES: List[Dict[str, Any]] = [
    {
        "merchant": "ShipBob",
        "description": "SHIPBOB FULFILLMENT FEES",
        "category": "operations_logistics",
        "attributes": {"provider": "ShipBob"},
        "rationale": "3PL fulfillment service",
    },
    {
        "merchant": "USPS",
        "description": "USPS POSTAGE STAMP PURCHASE",
        "category": "shipping_postage",
        "attributes": {"carrier": "USPS", "direction": "outbound"},
        "rationale": "Shipping orders to customers is COGS",
    },
]


def format_pass1_signal(signal: Signal) -> str:
    return f"{signal.source.value}:{signal.evidence_key} (confidence: {signal.confidence:.2f})"


def top_pass1_signals(signals: List[Signal], limit: int = MAX_PASS1_SIGNALS) -> List[str]:
    ranked = sorted(signals, key=lambda s: s.confidence, reverse=True)
    return [format_pass1_signal(s) for s in ranked[:limit]]


def _format_category(category: Category) -> str:
    lines = [f'- {category.slug} - "{category.name}"']
    if category.description:
        lines.append(f"  Description: {category.description}")
    if category.examples:
        lines.append(f"  Examples: {', '.join(category.examples[:3])}")
    if category.attribute_schema:
        lines.append(f"  Extractable attributes: {', '.join(category.attribute_schema)}")
    return "\n".join(lines)


def _format_example(example: Dict[str, Any]) -> str:
    return (
        "Example:\n"
        f"  Merchant: {example['merchant']}\n"
        f"  Description: {example['description']}\n"
        f"  -> category_slug: \"{example['category']}\"\n"
        f"  -> attributes: {json.dumps(example['attributes'])}\n"
        f"  -> rationale: \"{example['rationale']}\""
    )


def _pass1_section(context: PromptContext) -> str:
    if not context.pass1_signals:
        return ""
    section = "PASS-1 RULE EVIDENCE:\n"
    if context.pass1_category_name and context.pass1_confidence is not None:
        section += (
            f"Our rules suggested \"{context.pass1_category_name}\" "
            f"with {context.pass1_confidence * 100:.0f}% confidence.\n"
        )
    section += "Top signals:\n"
    section += "\n".join(f"  - {s}" for s in context.pass1_signals[:MAX_PASS1_SIGNALS])
    section += (
        "\nConsider this evidence but verify it fits the transaction. "
        "If you disagree, choose another category and say why in the rationale.\n"
    )
    return section


def build_prompt(context: PromptContext, taxonomy: Taxonomy = None) -> str:
    """
    Build the categorization prompt.

    Args:
        context: Transaction, industry and Pass-1 evidence
        taxonomy: Category catalog (defaults to the shipped taxonomy)

    Returns:
        Prompt text for the generative model
    """
    taxonomy = taxonomy or default_taxonomy
    tx = context.transaction
    categories = "\n\n".join(_format_category(c) for c in taxonomy.list_prompt_eligible(context.industry))

    examples = list(FEW_SHOT_EXAMPLES)
    if context.industry == Industry.ECOMMERCE:
        examples += ECOMMERCE_EXAMPLES
    examples_text = "\n\n".join(_format_example(e) for e in examples)

    direction = "money in" if tx.amount_cents > 0 else "money out"

    return f"""You are a financial categorization expert for {INDUSTRY_DESCRIPTIONS[context.industry]} businesses.

Your task: categorize this business transaction into ONE category and extract relevant attributes.

{_pass1_section(context)}
TRANSACTION TO CATEGORIZE:
Merchant: {tx.merchant_name or 'Unknown'}
Description: {tx.description or 'Not provided'}
Amount: {abs(tx.amount_cents) / 100:.2f} {tx.currency} ({direction})
MCC Code: {tx.mcc or 'Not provided'}
Date: {tx.date.isoformat()}

AVAILABLE CATEGORIES:
{categories}

CRITICAL RULES:
- Vendor names (Stripe, Meta, Google, etc.) are NOT categories - they are ATTRIBUTES
- Payment processors (Stripe, PayPal, Square) -> "payment_processing_fees" with processor attribute
- Processor payouts and transfers -> "payouts_clearing", never revenue
- Refunds, returns and chargebacks -> "refunds_contra", never an expense
- Ad platforms (Facebook, Google, TikTok) -> "marketing_ads" with platform attribute
- Only use attribute keys listed for the chosen category
- If truly unclear, use "{CATCH_ALL_SLUG}" and a low confidence

EXAMPLES OF CORRECT CATEGORIZATION:
{examples_text}

RESPONSE FORMAT (return ONLY this JSON, no other text):
{{
  "category_slug": "most_appropriate_category",
  "confidence": 0.85,
  "attributes": {{"key": "value"}},
  "rationale": "Brief explanation of why this category fits"
}}
"""


_FENCED_JSON = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL)


def _extract_json_text(response_text: str) -> str:
    fenced = _FENCED_JSON.search(response_text)
    if fenced:
        return fenced.group(1)
    start = response_text.find("{")
    end = response_text.rfind("}")
    if start != -1 and end > start:
        return response_text[start:end + 1]
    return response_text


def parse_llm_response(response_text: Optional[str]) -> LLMResponse:
    """
    Parse the model's JSON answer.

    Tolerates markdown fences and prose around the JSON object.

    Raises:
        LLMResponseError: empty text, invalid JSON or missing category_slug
    """
    if not response_text or not response_text.strip():
        raise LLMResponseError("Empty response text from model")

    try:
        data = json.loads(_extract_json_text(response_text))
    except json.JSONDecodeError as e:
        raise LLMResponseError(f"Response is not valid JSON: {e}") from e

    if not isinstance(data, dict) or not data.get("category_slug"):
        raise LLMResponseError("Missing category_slug in response")

    try:
        confidence = float(data.get("confidence", 0.5))
    except (TypeError, ValueError):
        confidence = 0.5
    attributes = data.get("attributes") or {}
    if not isinstance(attributes, dict):
        attributes = {}

    return LLMResponse(
        category_slug=str(data["category_slug"]).strip(),
        confidence=max(0.0, min(1.0, confidence)),
        attributes=attributes,
        rationale=str(data.get("rationale") or "No rationale provided"),
    )
