"""
抽出結果の正規化
構造化抽出（信頼度 >= 0.75）を優先し、足りないフィールドはOCR全文から正規表現で回収する
"""

import re
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Tuple

from payment_models import Currency, ExtractedPayment, OcrToken, StructuredExtraction, TextExtraction


# OCRトークンに対応付けできなかった回収値の信頼度
TEXT_UNANCHORED_CONFIDENCE = 0.5

_NUM = r"\d{1,3}(?:,\d{3})+(?:\.\d{1,2})?|\d+(?:\.\d{1,2})?"

AMOUNT_RE = re.compile(
    rf"(?<![A-Za-z])(?P<pre>₱|PHP|Php|RM|MYR)\s?(?P<num>{_NUM})"
    rf"|(?P<num2>{_NUM})\s?(?P<post>PHP|MYR)\b"
)
BARE_AMOUNT_RE = re.compile(rf"^\s*(?:{_NUM})\s*$")
# 記号なしの金額はラベル行で小数2桁のものだけ採用（日付などの誤検出防止）
LABELLED_NUMBER_RE = re.compile(r"(\d{1,3}(?:,\d{3})+\.\d{2}|\d+\.\d{2})")

AMOUNT_LABEL_RE = re.compile(r"\b(amount|total|sent|paid|transfer(?:red)?|payment)\b", re.I)
AMOUNT_EXCLUDE_RE = re.compile(r"\b(balance|fee|charge|available|points|cashback)\b", re.I)

CURRENCY_PATTERNS = [
    (re.compile(r"₱|\bphp\b|\bpesos?\b", re.I), Currency.PHP),
    (re.compile(r"\bRM(?=\s?\d)|\bMYR\b|\bringgit\b", re.I), Currency.MYR),
]

CURRENCY_CODES = {
    "PHP": Currency.PHP, "₱": Currency.PHP, "PESO": Currency.PHP, "PESOS": Currency.PHP,
    "MYR": Currency.MYR, "RM": Currency.MYR, "RINGGIT": Currency.MYR,
}

REFERENCE_PATTERNS = [
    re.compile(
        r"\b(?:ref(?:erence)?|txn|transaction)\.?\s*(?:no\.?|number|#|id|code)?\s*[:#.]?\s*"
        r"(?=[A-Z0-9-]*\d)([A-Z0-9][A-Z0-9-]{6,23}[A-Z0-9])\b",
        re.I,
    ),
    # GCash表示形式: 1012 345 678901
    re.compile(r"\b(\d{4}\s\d{3}\s\d{6})\b"),
    re.compile(r"\b((?:PH|MY|GF)-[A-Z0-9]{6,12}(?:-[A-Z0-9]{2,8})*)\b"),
    re.compile(r"\b([A-Z]{2,3}\d{6,12})\b"),
    re.compile(r"\b(\d{13})\b"),
]
DATE_LIKE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

# 市場別の決済手段キーワード
PAYMENT_METHODS = {
    Currency.PHP: [
        ("gcash", re.compile(r"\bg-?cash\b", re.I)),
        ("maya", re.compile(r"\b(?:pay)?maya\b", re.I)),
        ("bpi", re.compile(r"\bbpi\b", re.I)),
        ("bdo", re.compile(r"\bbdo\b", re.I)),
        ("metrobank", re.compile(r"\bmetrobank\b", re.I)),
        ("unionbank", re.compile(r"\bunion\s?bank\b", re.I)),
        ("grabpay", re.compile(r"\bgrab\s?pay\b", re.I)),
    ],
    Currency.MYR: [
        ("maybank", re.compile(r"\bmaybank(?:2u)?\b", re.I)),
        ("cimb", re.compile(r"\bcimb\b", re.I)),
        ("touchngo", re.compile(r"\btouch\s?['’]?n\s?['’]?go\b|\btng\b", re.I)),
        ("boost", re.compile(r"\bboost\b", re.I)),
        ("grabpay", re.compile(r"\bgrab\s?pay\b", re.I)),
        ("public_bank", re.compile(r"\bpublic\s?bank\b", re.I)),
        ("hong_leong", re.compile(r"\bhong\s?leong\b", re.I)),
    ],
}

SENDER_RE = re.compile(
    r"^\s*(?:from|sender|sent\s+by|account\s+name)\s*[:\-]?\s*(?P<name>[A-Za-z*][A-Za-z*.,' -]{1,60}?)\s*$",
    re.I | re.M,
)


def _to_decimal(num: str) -> Optional[Decimal]:
    try:
        return Decimal(num.replace(",", ""))
    except InvalidOperation:
        return None


def parse_amount(text: str) -> Tuple[Optional[Decimal], Optional[Currency]]:
    """金額文字列を (Decimal, 通貨) に変換する。"₱1,500.00" -> (1500.00, PHP)"""
    if not text:
        return None, None
    m = AMOUNT_RE.search(text)
    if m:
        num = m.group("num") or m.group("num2")
        symbol = m.group("pre") or m.group("post")
        return _to_decimal(num), CURRENCY_CODES.get(symbol.upper())
    if BARE_AMOUNT_RE.match(text):
        return _to_decimal(text.strip()), None
    return None, None


def parse_currency(value: str) -> Optional[Currency]:
    if not value:
        return None
    code = value.strip().upper()
    if code in CURRENCY_CODES:
        return CURRENCY_CODES[code]
    for pattern, currency in CURRENCY_PATTERNS:
        if pattern.search(value):
            return currency
    return None


def normalize_reference(ref: Optional[str]) -> str:
    """比較用の参照番号（大文字・空白/ハイフン除去）"""
    if not ref:
        return ""
    return re.sub(r"[\s\-]", "", ref).upper()


def _token_confidence(tokens: List[OcrToken], matched: str) -> float:
    m = matched.replace(" ", "").lower()
    best = None
    for t in tokens:
        tt = t.text.replace(" ", "").lower()
        if (len(tt) >= 2 and tt in m) or (m and m in tt):
            best = t.confidence if best is None else max(best, t.confidence)
    return best if best is not None else TEXT_UNANCHORED_CONFIDENCE


def _in_range(amount: Decimal, cfg: dict) -> bool:
    lo = Decimal(str(cfg["amount"]["min"]))
    hi = Decimal(str(cfg["amount"]["max"]))
    return lo <= amount <= hi


def amount_from_text(full_text: str) -> List[Tuple[Decimal, Optional[Currency], str]]:
    """OCR全文から金額候補を優先順に返す（ラベル行 > その他、残高・手数料行は除外）"""
    preferred, fallback = [], []
    for line in full_text.splitlines():
        if AMOUNT_EXCLUDE_RE.search(line):
            continue
        labelled = AMOUNT_LABEL_RE.search(line) is not None
        found = False
        for m in AMOUNT_RE.finditer(line):
            amount, currency = parse_amount(m.group(0))
            if amount is not None:
                (preferred if labelled else fallback).append((amount, currency, m.group(0)))
                found = True
        if labelled and not found:
            m = LABELLED_NUMBER_RE.search(line)
            if m:
                preferred.append((_to_decimal(m.group(1)), None, m.group(1)))
    return preferred + fallback


def reference_from_text(full_text: str) -> Optional[str]:
    for pattern in REFERENCE_PATTERNS:
        for m in pattern.finditer(full_text):
            candidate = re.sub(r"\s", "", m.group(1)).upper()
            if DATE_LIKE_RE.match(candidate):
                continue
            return candidate
    return None


def method_from_text(text: str, currency: Optional[Currency] = None) -> Optional[str]:
    markets = [currency] if currency else []
    markets += [c for c in PAYMENT_METHODS if c not in markets]
    for market in markets:
        for tag, pattern in PAYMENT_METHODS[market]:
            if pattern.search(text):
                return tag
    return None


def sender_from_text(full_text: str) -> Optional[str]:
    m = SENDER_RE.search(full_text)
    return m.group("name").strip() if m else None


def _currency_from_text(full_text: str) -> Optional[Tuple[Currency, str]]:
    hits = []
    for pattern, currency in CURRENCY_PATTERNS:
        m = pattern.search(full_text)
        if m:
            hits.append((m.start(), currency, m.group(0)))
    if not hits:
        return None
    _, currency, matched = min(hits, key=lambda h: h[0])
    return currency, matched


def normalize(
    submission_id: str,
    text: Optional[TextExtraction],
    structured: Optional[StructuredExtraction],
    cfg: dict,
    version: int = 1,
    notes: Optional[List[str]] = None,
) -> ExtractedPayment:
    """構造化抽出とOCR全文から ExtractedPayment を組み立てる。notes は抽出段階の劣化記録"""
    floor = float(cfg["extraction"]["field_confidence_floor"])
    fields = structured.fields if structured else {}
    sconf = structured.confidence if structured else 0.0
    trusted = structured is not None and not structured.low_confidence and sconf >= floor
    full_text = text.full_text if text else ""
    tokens = text.tokens if text else []

    ep = ExtractedPayment(
        submission_id=submission_id,
        version=version,
        raw_description=structured.raw_description if structured else "",
        notes=list(notes or []),
    )
    if structured is not None and structured.low_confidence:
        ep.notes.append("structured_low_confidence")

    def put(name: str, value, conf: float, source: str):
        setattr(ep, name, value)
        ep.field_confidence[name] = round(float(conf), 3)
        ep.sources[name] = source

    # amount
    s_amount, s_amount_currency = parse_amount(fields.get("amount") or "") if trusted else (None, None)
    text_amount_currency = None
    if s_amount is not None and _in_range(s_amount, cfg):
        put("amount", s_amount, sconf, "structured")
    else:
        if s_amount is not None:
            ep.notes.append("amount_out_of_range")
        s_amount_currency = None
        for amount, currency, matched in amount_from_text(full_text):
            if _in_range(amount, cfg):
                put("amount", amount, _token_confidence(tokens, matched), "text")
                text_amount_currency = (currency, matched) if currency else None
                break
            if "amount_out_of_range" not in ep.notes:
                ep.notes.append("amount_out_of_range")

    # currency: 明示された記号・コードのみ採用
    s_currency = parse_currency(fields.get("currency") or "") if trusted else None
    if s_currency:
        put("currency", s_currency, sconf, "structured")
    elif s_amount_currency:
        put("currency", s_amount_currency, sconf, "structured")
    elif text_amount_currency:
        currency, matched = text_amount_currency
        put("currency", currency, _token_confidence(tokens, matched), "text")
    else:
        hit = _currency_from_text(full_text)
        if hit:
            put("currency", hit[0], _token_confidence(tokens, hit[1]), "text")

    # reference
    s_ref = re.sub(r"\s", "", fields.get("reference_number") or "").upper() if trusted else ""
    if len(s_ref) >= 4:
        put("reference", s_ref, sconf, "structured")
    else:
        ref = reference_from_text(full_text)
        if ref:
            put("reference", ref, _token_confidence(tokens, ref), "text")

    # payment method
    s_method = (fields.get("payment_method") or "").strip() if trusted else ""
    if s_method:
        put("method", method_from_text(s_method, ep.currency) or s_method.lower(), sconf, "structured")
    else:
        method = method_from_text(full_text, ep.currency)
        if method:
            put("method", method, _token_confidence(tokens, method), "text")

    # sender
    s_sender = (fields.get("sender_info") or "").strip() if trusted else ""
    if s_sender:
        put("sender", s_sender, sconf, "structured")
    else:
        sender = sender_from_text(full_text)
        if sender:
            put("sender", sender, _token_confidence(tokens, sender), "text")

    return ep
