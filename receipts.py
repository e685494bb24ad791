from __future__ import annotations

import logging
from typing import Optional

from pydantic import ValidationError

from ai import TextGenerator, parse_json_response
from schemas import ReceiptScan


logger = logging.getLogger(__name__)

RECEIPT_PROMPT = """
Analyze this receipt image and extract the following information in JSON format:
- Total amount (just the number)
- Date (in ISO format)
- Description or items purchased (brief summary)
- Merchant/store name
- Suggested category (one of: housing,transportation,groceries,utilities,entertainment,food,shopping,healthcare,education,personal,travel,insurance,gifts,bills,other-expense )

Only respond with valid JSON in this exact format:
{
  "amount": number,
  "date": "ISO date string",
  "description": "string",
  "merchantName": "string",
  "category": "string"
}

If it's not a receipt, return an empty object {}
"""


class ReceiptScanError(ValueError):
    pass


def _user_message(exc: Exception) -> str:
    text = str(exc)
    lowered = text.lower()
    if "api key" in lowered:
        return "AI service not configured. Please contact support."
    if "quota" in lowered:
        return "AI service quota exceeded. Please try again later."
    if "network" in lowered:
        return "Network error. Please check your connection and try again."
    return text or "Failed to scan receipt. Please try again."


class ReceiptScanner:
    def __init__(self, client: Optional[TextGenerator]) -> None:
        self.client = client

    def scan(self, image: bytes, mime_type: Optional[str]) -> ReceiptScan:
        if self.client is None:
            raise ReceiptScanError("AI service not configured. Please contact support.")
        if not image or not (mime_type or "").startswith("image/"):
            raise ReceiptScanError("Please select a valid image file")

        try:
            text = self.client.generate([{"mime_type": mime_type, "data": image}, RECEIPT_PROMPT])
        except Exception as exc:
            logger.warning(f"receipt_scan_failed: error={exc}")
            raise ReceiptScanError(_user_message(exc)) from exc

        try:
            data = parse_json_response(text)
        except ValueError as exc:
            raise ReceiptScanError(
                "Invalid response format from AI. Please try again with a clearer image."
            ) from exc
        if not isinstance(data, dict) or not data:
            raise ReceiptScanError("No receipt data found in the image")
        if not data.get("amount"):
            raise ReceiptScanError("Could not extract amount from receipt")

        if isinstance(data.get("date"), str):
            data["date"] = data["date"][:10] or None
        data = {key: value for key, value in data.items() if value not in (None, "")}
        try:
            return ReceiptScan.model_validate(data)
        except ValidationError as exc:
            raise ReceiptScanError(
                "Invalid response format from AI. Please try again with a clearer image."
            ) from exc
