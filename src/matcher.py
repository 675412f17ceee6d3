from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from rapidfuzz.utils import default_process

from payment_models import ExtractedPayment, MatchCandidate, PendingObligation
from field_normalizer import normalize_reference


MIN_PARTIAL_REFERENCE = 4


def amount_tolerance(amount: Decimal, cfg: Dict) -> Decimal:
    """±tolerance_pct% と固定イプシロンの大きい方"""
    a = cfg.get("amount", {})
    pct = Decimal(str(a.get("tolerance_pct", 1.0)))
    eps = Decimal(str(a.get("min_epsilon", "1.00")))
    return max(abs(amount) * pct / 100, eps)


def _amount_points(extracted: Decimal, expected: Decimal, weight: int, cfg: Dict) -> Tuple[int, str]:
    diff = abs(extracted - expected)
    tol = amount_tolerance(expected, cfg)
    if diff <= tol:
        return weight, f"amount≈ (diff={diff:.2f}, tol={tol:.2f})"
    if expected <= 0:
        return 0, f"amount_diff={diff:.2f} (expected amount invalid)"
    rel = diff / expected * 100
    bands = sorted(cfg.get("amount", {}).get("bands", []), key=lambda b: b["pct"])
    for band in bands:
        if rel <= Decimal(str(band["pct"])):
            pts = int(round(weight * float(band["ratio"])))
            return pts, f"amount_diff={diff:.2f} ({rel:.1f}% within {band['pct']}% band, +{pts})"
    return 0, f"amount_diff={diff:.2f} ({rel:.1f}% off)"


def _reference_points(extracted: str, expected: str, weight: int) -> Tuple[int, str]:
    a, b = normalize_reference(extracted), normalize_reference(expected)
    if a == b:
        return weight, f"reference= {expected}"
    shorter, longer = (a, b) if len(a) <= len(b) else (b, a)
    if len(shorter) >= MIN_PARTIAL_REFERENCE and shorter in longer:
        pts = int(round(weight * 0.6))
        return pts, f"reference~ {extracted} in {expected} (+{pts})"
    return 0, f"reference_mismatch {extracted} != {expected}"


def _sender_points(extracted: str, buyer_name: str, weight: int) -> Tuple[int, str]:
    a, b = default_process(extracted), default_process(buyer_name)
    if not a or not b:
        return 0, "sender_unreadable"
    if a in b or b in a:
        return weight, f"sender≈ {buyer_name}"
    shared = {t for t in a.split() if len(t) >= 2} & {t for t in b.split() if len(t) >= 2}
    if shared:
        pts = int(round(weight * 8 / 15))
        return pts, f"sender_tokens={','.join(sorted(shared))} (+{pts})"
    return 0, f"sender_mismatch {extracted} vs {buyer_name}"


def score_breakdown(extracted: ExtractedPayment, ob: PendingObligation, cfg: Dict) -> Tuple[Dict[str, Tuple[int, int]], List[str]]:
    """フィールドごとの (獲得点, 配点) と理由。比較できないフィールドは含めない"""
    weights = cfg.get("weights", {"amount": 40, "currency": 20, "reference": 25, "sender": 15})
    parts: Dict[str, Tuple[int, int]] = {}
    reasons: List[str] = []

    if extracted.amount is not None:
        pts, why = _amount_points(extracted.amount, ob.amount, weights["amount"], cfg)
        parts["amount"] = (pts, weights["amount"])
        reasons.append(why)

    if extracted.currency is not None:
        if extracted.currency == ob.currency:
            parts["currency"] = (weights["currency"], weights["currency"])
            reasons.append(f"currency= {ob.currency.value}")
        else:
            parts["currency"] = (0, weights["currency"])
            reasons.append(f"currency_mismatch {extracted.currency.value} != {ob.currency.value}")

    if extracted.reference and ob.reference:
        pts, why = _reference_points(extracted.reference, ob.reference, weights["reference"])
        parts["reference"] = (pts, weights["reference"])
        reasons.append(why)

    if extracted.sender and ob.buyer_name:
        pts, why = _sender_points(extracted.sender, ob.buyer_name, weights["sender"])
        parts["sender"] = (pts, weights["sender"])
        reasons.append(why)

    return parts, reasons


def score_match(extracted: ExtractedPayment, ob: PendingObligation, cfg: Dict) -> Tuple[int, List[str]]:
    """0..100 の一致スコア。抽出できなかったフィールドは分母から除いて100点満点に換算する"""
    parts, reasons = score_breakdown(extracted, ob, cfg)
    possible = sum(w for _, w in parts.values())
    if possible == 0:
        return 0, reasons + ["no_comparable_fields"]
    earned = sum(p for p, _ in parts.values())
    total = int(earned * 100 / possible + 0.5)
    return max(0, min(100, total)), reasons


def rank_candidates(extracted: ExtractedPayment, obligations: List[PendingObligation], cfg: Dict, limit: Optional[int] = None) -> List[MatchCandidate]:
    candidates: List[MatchCandidate] = []
    for ob in obligations:
        parts, _ = score_breakdown(extracted, ob, cfg)
        score, reasons = score_match(extracted, ob, cfg)
        candidates.append(
            MatchCandidate(
                obligation_id=ob.id,
                score=score,
                reasons=reasons,
                breakdown={k: p for k, (p, _) in parts.items()},
            )
        )
    # 同点はID順で決定的に並べる
    candidates.sort(key=lambda c: (-c.score, c.obligation_id))
    return candidates[:limit] if limit else candidates
