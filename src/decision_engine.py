"""
判定エンジン
提出の状態機械と、スコア済み候補から自動承認・手動レビュー・却下・候補なしを決める方針
"""

from typing import Dict, List, Optional

from payment_models import (
    DecisionKind,
    ExtractedPayment,
    MatchCandidate,
    SubmissionState,
    VerificationDecision,
)


# 理由コード
CURRENCY_UNRESOLVED = "currency_unresolved"
AMOUNT_UNRESOLVED = "amount_unresolved"
UNREADABLE_IMAGE = "unreadable_image"
AMBIGUOUS_MATCH = "ambiguous_match"
TARGET_SETTLED = "target already settled"
INTERNAL_ERROR = "internal_error"
NO_CANDIDATE = "no_candidate"
BELOW_AUTO_THRESHOLD = "below_auto_threshold"
BELOW_REVIEW_THRESHOLD = "below_review_threshold"
LOW_EXTRACTION_CONFIDENCE = "low_extraction_confidence"
NO_IDENTITY_SIGNAL = "no_identity_signal"


S = SubmissionState

TRANSITIONS = {
    S.RECEIVED: {S.EXTRACTING, S.CANCELLED},
    # 抽出・スコア中の received への戻りはレート制限や永続化失敗による再キュー
    S.EXTRACTING: {S.SCORING, S.MANUAL_REVIEW, S.RECEIVED, S.CANCELLED},
    S.SCORING: {S.AUTO_APPROVED, S.MANUAL_REVIEW, S.REJECTED, S.NO_CANDIDATE, S.RECEIVED, S.CANCELLED},
    S.AUTO_APPROVED: {S.RESOLVED},
    # 判定後の received への遷移は再処理
    S.MANUAL_REVIEW: {S.RESOLVED, S.RECEIVED},
    S.REJECTED: {S.RESOLVED, S.RECEIVED},
    S.NO_CANDIDATE: {S.RESOLVED, S.RECEIVED},
    S.RESOLVED: set(),
    S.CANCELLED: set(),
}

KIND_TO_STATE = {
    DecisionKind.AUTO_APPROVED: S.AUTO_APPROVED,
    DecisionKind.MANUAL_REVIEW: S.MANUAL_REVIEW,
    DecisionKind.REJECTED: S.REJECTED,
    DecisionKind.NO_CANDIDATE: S.NO_CANDIDATE,
    DecisionKind.APPROVED: S.RESOLVED,
}


def can_transition(current: SubmissionState, target: SubmissionState) -> bool:
    return target in TRANSITIONS.get(current, set())


def _manual(submission_id: str, reasons: List[str], score: int = 0, candidates: Optional[List[MatchCandidate]] = None,
            obligation_id: Optional[str] = None) -> VerificationDecision:
    return VerificationDecision(
        submission_id=submission_id,
        kind=DecisionKind.MANUAL_REVIEW,
        obligation_id=obligation_id,
        score=score,
        reasons=reasons,
        candidates=[c.to_dict() for c in (candidates or [])],
    )


def precheck(extracted: ExtractedPayment) -> Optional[VerificationDecision]:
    """金額・通貨が欠けていれば照合せず手動レビュー"""
    reasons = []
    if extracted.currency is None:
        reasons.append(CURRENCY_UNRESOLVED)
    if extracted.amount is None or extracted.amount <= 0:
        reasons.append(AMOUNT_UNRESOLVED)
    if not reasons:
        return None
    return _manual(extracted.submission_id, reasons + extracted.notes)


def unreadable(submission_id: str, detail: str = "") -> VerificationDecision:
    return _manual(submission_id, [UNREADABLE_IMAGE] + ([detail] if detail else []))


def internal_error(submission_id: str, detail: str = "") -> VerificationDecision:
    return _manual(submission_id, [INTERNAL_ERROR] + ([detail] if detail else []))


def downgrade(decision: VerificationDecision, reason: str = TARGET_SETTLED) -> VerificationDecision:
    """自動承認のCASに負けた判定を手動レビューに落とす"""
    return VerificationDecision(
        submission_id=decision.submission_id,
        kind=DecisionKind.MANUAL_REVIEW,
        obligation_id=decision.obligation_id,
        score=decision.score,
        reasons=[reason] + decision.reasons,
        candidates=decision.candidates,
    )


def _min_confidence(extracted: ExtractedPayment, top: MatchCandidate) -> float:
    used = ["amount", "currency"] + [f for f in ("reference", "sender") if top.breakdown.get(f, 0) > 0]
    return min(extracted.field_confidence.get(f, 0.0) for f in used)


def decide(extracted: ExtractedPayment, ranked: List[MatchCandidate], cfg: Dict) -> VerificationDecision:
    """スコア降順の候補から判定を作る（コミット前。自動承認は呼び出し側でCASする）"""
    th = cfg.get("thresholds", {})
    auto_th = th.get("auto_approve", 90)
    review_th = th.get("review", 60)
    min_margin = th.get("min_margin", 10)
    sid = extracted.submission_id

    if not ranked:
        return VerificationDecision(
            submission_id=sid, kind=DecisionKind.NO_CANDIDATE, obligation_id=None, score=0,
            reasons=[NO_CANDIDATE] + extracted.notes,
        )

    top = ranked[0]
    margin = top.score - ranked[1].score if len(ranked) > 1 else top.score
    ambiguous = len(ranked) > 1 and margin < min_margin
    identity = top.breakdown.get("reference", 0) > 0 or top.breakdown.get("sender", 0) > 0
    confident = _min_confidence(extracted, top) >= th.get("min_field_confidence", 0.6)

    if top.score >= auto_th and not ambiguous and confident and (identity or not th.get("require_identity_signal", True)):
        return VerificationDecision(
            submission_id=sid, kind=DecisionKind.AUTO_APPROVED, obligation_id=top.obligation_id,
            score=top.score, reasons=list(top.reasons), candidates=[top.to_dict()],
        )

    if top.score >= review_th:
        reasons = []
        if ambiguous:
            reasons.append(AMBIGUOUS_MATCH)
        if top.score < auto_th:
            reasons.append(BELOW_AUTO_THRESHOLD)
        elif not confident:
            reasons.append(LOW_EXTRACTION_CONFIDENCE)
        elif not identity:
            reasons.append(NO_IDENTITY_SIGNAL)
        return _manual(sid, reasons + extracted.notes + top.reasons, top.score, ranked, top.obligation_id)

    if th.get("low_score_policy", "manual_review") == "reject":
        return VerificationDecision(
            submission_id=sid, kind=DecisionKind.REJECTED, obligation_id=None, score=top.score,
            reasons=[BELOW_REVIEW_THRESHOLD] + extracted.notes + top.reasons,
            candidates=[c.to_dict() for c in ranked],
        )
    return _manual(sid, [BELOW_REVIEW_THRESHOLD] + extracted.notes + top.reasons, top.score, ranked)
