"""
OCRサービスのクライアント
画像をHTTPのOCRサービスへ送り、全文テキストとトークン単位の信頼度を受け取る
"""

from typing import Dict, List

import requests
from loguru import logger

from payment_models import OcrToken, TextExtraction
from verification_errors import ExtractionError, MalformedInputError


class OcrServiceClient:
    """OCRサービス（Tesseract互換の言語指定: eng+fil+msa）"""

    def __init__(self, base_url: str, languages: str = "eng+fil+msa", confidence_floor: float = 0.6, timeout: float = 15):
        self.base_url = base_url.rstrip("/")
        self.languages = languages
        self.confidence_floor = confidence_floor
        self.timeout = timeout

    @classmethod
    def from_config(cls, cfg: dict) -> "OcrServiceClient":
        ex = cfg["extraction"]
        return cls(
            cfg["services"]["ocr_url"],
            languages=ex["ocr_languages"],
            confidence_floor=float(ex["ocr_confidence_floor"]),
            timeout=float(ex["timeout_seconds"]),
        )

    def extract_text(self, image_bytes: bytes) -> TextExtraction:
        url = f"{self.base_url}/ocr"
        try:
            resp = requests.post(
                url,
                files={"image": ("proof", image_bytes, "application/octet-stream")},
                data={"languages": self.languages},
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            raise ExtractionError(f"OCR timeout after {self.timeout}s", extractor="text") from e
        except requests.RequestException as e:
            raise ExtractionError(f"OCR service unreachable: {e}", extractor="text") from e

        if resp.status_code in (415, 422):
            # サービス側で画像をデコードできなかった
            raise MalformedInputError(f"OCR rejected image: {resp.status_code} {resp.text[:200]}")
        if resp.status_code != 200:
            retryable = resp.status_code == 429 or resp.status_code >= 500
            raise ExtractionError(
                f"OCR error {resp.status_code}: {resp.text[:200]}",
                extractor="text", retryable=retryable, status_code=resp.status_code,
            )
        try:
            data = resp.json()
        except ValueError as e:
            raise ExtractionError(f"OCR returned non-JSON body: {e}", extractor="text", retryable=False) from e

        tokens = self._filter_tokens(data.get("tokens") or [])
        logger.debug("OCR done: {n} tokens kept (floor={floor})", n=len(tokens), floor=self.confidence_floor)
        return TextExtraction(full_text=data.get("text") or "", tokens=tokens, languages=self.languages)

    def _filter_tokens(self, raw_tokens: List[Dict]) -> List[OcrToken]:
        kept: List[OcrToken] = []
        for t in raw_tokens:
            text = (t.get("text") or "").strip()
            if not text:
                continue
            conf = _normalize_confidence(t.get("confidence"))
            if conf < self.confidence_floor:
                continue
            kept.append(OcrToken(text=text, confidence=conf, bbox=t.get("bbox")))
        return kept


def _normalize_confidence(value) -> float:
    """Tesseractの0..100表記を0..1へ揃える（-1等の不正値は0）"""
    try:
        conf = float(value)
    except (TypeError, ValueError):
        return 0.0
    if conf > 1.0:
        conf = conf / 100.0
    return max(0.0, min(1.0, conf))
