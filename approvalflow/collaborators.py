"""
Model-backed collaborators: handbook Q&A and receipt extraction.
"""

from __future__ import annotations

import base64
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date

from dateutil import parser as date_parser
from dateutil.parser import ParserError

from approvalflow.action_parser import extract_object, load_json_object
from approvalflow.exceptions import ModelUnavailableError, ParseError, ReceiptExtractionError
from approvalflow.llm import ModelClient
from data.company_records import EMPLOYEE_HANDBOOK

logger = logging.getLogger(__name__)

HANDBOOK_PROMPT = """You are an expert on the company's employee handbook.
Answer the question based ONLY on the handbook content below.
If the handbook does not cover the question, say so plainly.
Quote the relevant section heading when you can.

HANDBOOK:
{handbook}
"""

RECEIPT_PROMPT = """Extract the purchase details from this receipt image.
Respond with a single JSON object and nothing else:
{"amount": <total as number>, "currency": "<ISO code>", "date": "<YYYY-MM-DD>",
 "merchant": "<name>", "line_items": [{"description": "<text>", "amount": <number>}]}
Use null for anything you cannot read."""


class HandbookClient:
    """Answers policy questions from the handbook text."""

    def __init__(self, model: ModelClient, handbook_text: str = EMPLOYEE_HANDBOOK):
        self.model = model
        self.handbook_text = handbook_text

    async def ask(self, query: str) -> dict:
        messages = [
            {"role": "system", "content": HANDBOOK_PROMPT.format(handbook=self.handbook_text)},
            {"role": "user", "content": query},
        ]
        answer = await self.model.complete(messages)
        return {"answer": answer.strip(), "source": "Employee Handbook"}


@dataclass
class ReceiptExtraction:
    amount: float | None
    currency: str | None = None
    date: date | None = None
    merchant: str | None = None
    line_items: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "amount": self.amount,
            "currency": self.currency,
            "date": self.date.isoformat() if self.date else None,
            "merchant": self.merchant,
            "line_items": self.line_items,
        }


class ReceiptExtractor(ABC):
    @abstractmethod
    async def extract(self, content: bytes, filename: str, content_type: str) -> ReceiptExtraction:
        """Raises ReceiptExtractionError if the receipt cannot be read."""


class ModelReceiptExtractor(ReceiptExtractor):
    """Sends the receipt image to a vision-capable model and parses its JSON reply."""

    def __init__(self, model: ModelClient):
        self.model = model

    async def extract(self, content, filename, content_type="image/png"):
        if not content_type.startswith("image/"):
            raise ReceiptExtractionError(
                f"Unsupported receipt format '{content_type}'. Please upload a photo or scan."
            )

        encoded = base64.b64encode(content).decode("ascii")
        messages = [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": RECEIPT_PROMPT},
                    {"type": "image_url", "image_url": {"url": f"data:{content_type};base64,{encoded}"}},
                ],
            }
        ]

        try:
            reply = await self.model.complete(messages)
            payload = load_json_object(extract_object(reply, 0))
        except (ModelUnavailableError, ParseError) as e:
            logger.warning(f"Receipt extraction failed for {filename}: {e}")
            raise ReceiptExtractionError(
                "The receipt could not be read. Please resubmit a clearer image."
            ) from e

        amount = payload.get("amount")
        if not isinstance(amount, (int, float)) or amount <= 0:
            raise ReceiptExtractionError(
                "No total amount could be read from the receipt. Please resubmit a clearer image."
            )

        receipt_date = None
        if payload.get("date"):
            try:
                receipt_date = date_parser.isoparse(str(payload["date"])).date()
            except (ParserError, ValueError):
                logger.info(f"Ignoring unreadable receipt date: {payload['date']}")

        return ReceiptExtraction(
            amount=float(amount),
            currency=payload.get("currency") or "USD",
            date=receipt_date,
            merchant=payload.get("merchant"),
            line_items=[i for i in payload.get("line_items") or [] if isinstance(i, dict)],
        )
