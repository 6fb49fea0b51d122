"""SMS transaction classifier — Claude Haiku parser plus an offline keyword fallback.

The pipeline treats the classifier as an oracle: given raw SMS text and the
sender id, return a ParsedCandidate or None ("not a transaction"). Transport
and parse failures raise ClassifierError; the pipeline decides what that means.
"""

import asyncio
import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Optional

from smsledger.errors import ClassifierError
from smsledger.models import (
    CATEGORIES,
    DIRECTIONS,
    ParsedCandidate,
    normalize_category,
    parse_timestamp,
    to_amount,
)

logger = logging.getLogger(__name__)

MAX_SMS_CHARS = 1500


class Classifier(ABC):

    @abstractmethod
    async def classify(self, text: str, sender: str) -> Optional[ParsedCandidate]:
        """Return a candidate, or None if the text is not a financial transaction."""
        ...


def candidate_from_dict(data, text: str) -> Optional[ParsedCandidate]:
    """Validate a classifier's JSON guess. No positive amount → None."""
    if not isinstance(data, dict):
        return None
    if data.get("is_transaction") is False or data.get("type") == "unknown":
        return None

    amount = to_amount(data.get("amount"))
    if amount is None:
        return None

    raw_category = data.get("category")
    category = normalize_category(raw_category)
    direction = str(data.get("type") or data.get("direction") or "debit").lower()
    if direction not in DIRECTIONS:
        direction = "debit"

    return ParsedCandidate(
        amount=amount,
        name=str(data.get("name") or "").strip() or "Unknown Purchase",
        category=category,
        direction=direction,
        payment_method=str(data.get("payment_method") or ""),
        reference_id=str(data.get("reference_id") or "").strip(),
        occurred_at=parse_timestamp(data.get("transaction_date")),
        source_institution=str(data.get("source") or ""),
        merchant_domain=str(data.get("merchant_domain") or ""),
        raw_text=text,
        category_confident=bool(raw_category) and category != "Other",
    )


# ---------------------------------------------------------------------------
# Claude Haiku classifier
# ---------------------------------------------------------------------------

def build_prompt(text: str, sender: str) -> str:
    return (
        "You are a financial assistant that parses SMS transaction alerts.\n\n"
        f'SMS body: "{text[:MAX_SMS_CHARS]}"\n'
        f'Sender id: "{sender}"\n\n'
        "1. Decide if this is a financial transaction (debit, credit, bill payment). "
        'If NOT — OTPs, promotions, balance-only alerts — return {"is_transaction": false}.\n'
        "2. Otherwise extract:\n"
        "- name: clean merchant or person name. Drop words like \"UPI-ref\", \"Transfer to\".\n"
        "- amount: numeric value only.\n"
        f"- category: one of {', '.join(CATEGORIES)}.\n"
        '- type: "debit" or "credit".\n'
        "- merchant_domain: merchant website domain (e.g. swiggy.com), null for people or unknown.\n"
        "- payment_method: UPI, Card, NetBanking, Wallet, Cash, etc.\n"
        "- reference_id: any UTR, Ref No or transaction id, exactly as written.\n"
        "- transaction_date: ISO 8601 if a date/time is mentioned, else null.\n"
        "- source: bank or wallet name (e.g. HDFC, SBI, Paytm).\n\n"
        "If you cannot find a field, set it to null — do NOT guess.\n"
        "Return ONLY a valid JSON object, no markdown:\n"
        '{"is_transaction": true, "name": "Swiggy", "amount": 250.00, "category": "Food", '
        '"type": "debit", "merchant_domain": "swiggy.com", "payment_method": "UPI", '
        '"reference_id": "1234567890", "transaction_date": null, "source": "HDFC Bank"}'
    )


def _extract_json(text: str):
    """Pull the JSON object out of a reply that may carry fences or prose."""
    clean = text.strip()
    if clean.lower() == "null":
        return None
    if "{" not in clean:
        raise ClassifierError(f"No JSON object in classifier reply: {clean[:200]}")
    json_str = clean[clean.index("{"):clean.rindex("}") + 1]
    try:
        return json.loads(json_str)
    except json.JSONDecodeError as e:
        raise ClassifierError(f"Malformed classifier JSON: {e}") from e


class AnthropicClassifier(Classifier):
    """Claude Haiku parser. Every call is bounded by `timeout` seconds."""

    def __init__(self, api_key: str, model: str = "claude-haiku-4-5-20251001",
                 timeout: float = 20.0, client=None):
        if client is None:
            from anthropic import AsyncAnthropic
            client = AsyncAnthropic(api_key=api_key)
        self.client = client
        self.model = model
        self.timeout = timeout

    async def classify(self, text: str, sender: str) -> Optional[ParsedCandidate]:
        if not (text or "").strip():
            return None
        try:
            response = await asyncio.wait_for(
                self.client.messages.create(
                    model=self.model,
                    max_tokens=400,
                    temperature=0.1,
                    messages=[{"role": "user", "content": build_prompt(text, sender)}],
                ),
                timeout=self.timeout,
            )
            reply = response.content[0].text
        except asyncio.TimeoutError as e:
            raise ClassifierError(f"Classifier timed out after {self.timeout}s") from e
        except Exception as e:
            raise ClassifierError(f"Classifier request failed: {e}") from e

        data = _extract_json(reply)
        candidate = candidate_from_dict(data, text)
        if candidate:
            logger.info(
                "Classified %s: %s %s %s (ref=%s)",
                sender, candidate.direction, candidate.amount, candidate.name,
                candidate.reference_id or "-",
            )
        return candidate


# ---------------------------------------------------------------------------
# Offline keyword classifier (no API key configured)
# ---------------------------------------------------------------------------

_AMOUNT_PATTERNS = [
    re.compile(r"(?:inr|rs\.?|₹)\s*([0-9][0-9,]*(?:\.[0-9]+)?)", re.IGNORECASE),
    re.compile(r"([0-9][0-9,]*(?:\.[0-9]{1,2})?)\s*(?:inr|rs\.?|₹)", re.IGNORECASE),
]
_CREDIT_RE = re.compile(r"credited|received|deposited|added", re.IGNORECASE)
_DEBIT_RE = re.compile(r"debited|spent|withdrawn|deducted|paid|payment", re.IGNORECASE)
_VENDOR_AT_RE = re.compile(r"\bat\s+([A-Za-z0-9&._-][A-Za-z0-9 &._-]{1,40}?)(?:\s+on\b|\.|,|$)", re.IGNORECASE)
_VENDOR_TO_RE = re.compile(r"\bto\s+([A-Za-z0-9@._-]+)", re.IGNORECASE)
_REFERENCE_RE = re.compile(r"(?:ref(?:erence)?|utr|txn)\s*(?:no\.?|id)?\s*[:#-]?\s*([A-Za-z0-9]{4,})", re.IGNORECASE)
_UPI_RE = re.compile(r"\bupi\b", re.IGNORECASE)


class KeywordClassifier(Classifier):
    """Regex parser for Indian bank alerts. Never assigns a confident category."""

    async def classify(self, text: str, sender: str) -> Optional[ParsedCandidate]:
        body = text or ""
        amount = None
        for pattern in _AMOUNT_PATTERNS:
            match = pattern.search(body)
            if match:
                amount = to_amount(match.group(1))
                break
        if amount is None:
            return None

        if _CREDIT_RE.search(body):
            direction = "credit"
        elif _DEBIT_RE.search(body):
            direction = "debit"
        else:
            return None

        vendor = _VENDOR_AT_RE.search(body) or _VENDOR_TO_RE.search(body)
        reference = _REFERENCE_RE.search(body)
        return ParsedCandidate(
            amount=amount,
            name=vendor.group(1).strip().rstrip(".,-") if vendor else "SMS Transaction",
            category="Income" if direction == "credit" else "Other",
            direction=direction,
            payment_method="UPI" if _UPI_RE.search(body) else "",
            reference_id=reference.group(1) if reference else "",
            source_institution=sender,
            raw_text=body,
            category_confident=direction == "credit",
        )
