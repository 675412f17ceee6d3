"""
支払いスクリーンショットの構造化抽出クライアント
OpenAI互換の chat/completions エンドポイントへ画像を送り、payment_proof_v1 スキーマで検証する
"""

import base64
import json
import re
from decimal import Decimal
from typing import Dict, Optional

import requests
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from payment_models import StructuredExtraction
from verification_errors import ExtractionError


SCHEMA_VERSION = "payment_proof_v1"
LOW_CONFIDENCE_FLOOR = 0.1

SYSTEM_PROMPT = """
You read payment confirmation screenshots from Philippine and Malaysian e-wallets and banks
(GCash, Maya, BPI, BDO, Maybank2u, CIMB, Touch 'n Go, Boost, GrabPay, ...).

Return ONLY a JSON object with exactly these keys. Use null when a value is not visible; never omit a key.
{
  "payment_method": "wallet or bank name",
  "amount": "amount as shown, e.g. 1,500.00",
  "currency": "PHP or MYR",
  "sender_info": "name of the person who sent the money",
  "recipient_info": "name or account of the receiver",
  "reference_number": "transaction / reference number",
  "confidence": 0.0,
  "reasoning": "one sentence on what you saw"
}
confidence is 0.0-1.0. Use 1.0 only when every value is clearly legible.
"""


class PaymentProofV1(BaseModel):
    """全フィールド必須（値は null 可）"""
    model_config = ConfigDict(extra="ignore")

    payment_method: Optional[str]
    amount: Optional[str]
    currency: Optional[str]
    sender_info: Optional[str]
    recipient_info: Optional[str]
    reference_number: Optional[str]
    confidence: Optional[float] = Field(ge=0.0, le=1.0)
    reasoning: Optional[str]

    @field_validator("amount", mode="before")
    @classmethod
    def _amount_as_text(cls, v):
        if isinstance(v, (int, float, Decimal)) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator("confidence", mode="before")
    @classmethod
    def _percent_to_ratio(cls, v):
        # 85 のようなパーセント表記を許容
        if isinstance(v, (int, float)) and not isinstance(v, bool) and 1.0 < v <= 100.0:
            return v / 100.0
        return v


def _strip_code_fence(content: str) -> str:
    m = re.search(r"```(?:json)?\s*(.*?)```", content, re.DOTALL)
    return m.group(1).strip() if m else content.strip()


def parse_payload(content: str) -> StructuredExtraction:
    """モデル応答をスキーマ検証する。壊れた応答は low_confidence 結果に変換し例外は出さない"""
    try:
        payload = PaymentProofV1.model_validate(json.loads(_strip_code_fence(content)))
    except (json.JSONDecodeError, ValidationError, TypeError) as e:
        logger.warning("Vision payload rejected ({err}); returning low_confidence result", err=type(e).__name__)
        return StructuredExtraction(
            fields={},
            confidence=LOW_CONFIDENCE_FLOOR,
            raw_description=content[:500],
            low_confidence=True,
        )

    data = payload.model_dump()
    confidence = data.pop("confidence")
    reasoning = data.pop("reasoning") or ""
    if confidence is None:
        confidence = LOW_CONFIDENCE_FLOOR
    return StructuredExtraction(
        fields=data,
        confidence=float(confidence),
        raw_description=reasoning,
        low_confidence=confidence <= LOW_CONFIDENCE_FLOOR,
    )


class VisionPaymentExtractor:
    def __init__(self, api_base: str, api_key: Optional[str], model: str, timeout: float = 15):
        self.url = f"{api_base.rstrip('/')}/chat/completions"
        self.api_key = api_key
        self.model = model
        self.timeout = timeout

    @classmethod
    def from_config(cls, cfg: dict) -> "VisionPaymentExtractor":
        s = cfg["services"]
        return cls(s["vision_api_base"], s.get("vision_api_key"), s["vision_model"], float(cfg["extraction"]["timeout_seconds"]))

    def _build_messages(self, image_bytes: bytes, mime: str, hints: Optional[Dict]) -> list:
        user_text = "Extract the payment details from this screenshot."
        if hints:
            known = ", ".join(f"{k}={v}" for k, v in hints.items() if v is not None)
            if known:
                # 期待値はヒントとしてのみ渡す（画像にない値を書かせない）
                user_text += f" The buyer is expected to have paid: {known}. Report what the image shows, even if it differs."
        data_uri = f"data:{mime};base64,{base64.b64encode(image_bytes).decode('ascii')}"
        return [
            {"role": "system", "content": SYSTEM_PROMPT},
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": user_text},
                    {"type": "image_url", "image_url": {"url": data_uri}},
                ],
            },
        ]

    def extract_payment(self, image_bytes: bytes, hints: Optional[Dict] = None, mime: str = "image/jpeg") -> StructuredExtraction:
        if not self.api_key:
            raise ExtractionError("VISION_API_KEY not set", extractor="structured", retryable=False)
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        body = {
            "model": self.model,
            "messages": self._build_messages(image_bytes, mime, hints),
            "temperature": 0.0,
            "max_tokens": 600,
            "response_format": {"type": "json_object"},
        }
        try:
            resp = requests.post(self.url, headers=headers, json=body, timeout=self.timeout)
        except requests.Timeout as e:
            raise ExtractionError(f"vision timeout after {self.timeout}s", extractor="structured") from e
        except requests.RequestException as e:
            raise ExtractionError(f"vision API unreachable: {e}", extractor="structured") from e

        if resp.status_code != 200:
            retryable = resp.status_code == 429 or resp.status_code >= 500
            raise ExtractionError(
                f"vision API error {resp.status_code}: {resp.text[:200]}",
                extractor="structured", retryable=retryable, status_code=resp.status_code,
            )
        try:
            content = resp.json()["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError):
            content = resp.text or ""
        return parse_payload(content)
