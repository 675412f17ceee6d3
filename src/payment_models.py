from dataclasses import dataclass, field, asdict
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional


class Currency(str, Enum):
    PHP = "PHP"
    MYR = "MYR"


class SubmissionState(str, Enum):
    RECEIVED = "received"
    EXTRACTING = "extracting"
    SCORING = "scoring"
    AUTO_APPROVED = "auto_approved"
    MANUAL_REVIEW = "manual_review"
    REJECTED = "rejected"
    NO_CANDIDATE = "no_candidate"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"


class DecisionKind(str, Enum):
    AUTO_APPROVED = "auto_approved"
    MANUAL_REVIEW = "manual_review"
    REJECTED = "rejected"
    NO_CANDIDATE = "no_candidate"
    # レビュー担当者による承認
    APPROVED = "approved"


class ObligationStatus(str, Enum):
    AWAITING_PAYMENT = "awaiting_payment"
    PAID = "paid"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


@dataclass
class OcrToken:
    text: str
    confidence: float  # 0..1
    bbox: Optional[List[int]] = None


@dataclass
class TextExtraction:
    full_text: str
    tokens: List[OcrToken]
    languages: str = "eng"


@dataclass
class StructuredExtraction:
    fields: Dict[str, Optional[str]]
    confidence: float
    raw_description: str = ""
    low_confidence: bool = False
    schema_version: str = "payment_proof_v1"


@dataclass
class ExtractedPayment:
    """抽出結果を正規化した支払い情報（1提出につき1バージョン）"""
    submission_id: str
    amount: Optional[Decimal] = None
    currency: Optional[Currency] = None
    method: Optional[str] = None
    sender: Optional[str] = None
    reference: Optional[str] = None
    field_confidence: Dict[str, float] = field(default_factory=dict)
    sources: Dict[str, str] = field(default_factory=dict)  # field -> structured|text
    notes: List[str] = field(default_factory=list)
    raw_description: str = ""
    extracted_at: str = field(default_factory=lambda: datetime.utcnow().isoformat())
    version: int = 1

    def __post_init__(self):
        if self.amount is not None and self.amount < 0:
            raise ValueError(f"amount must be non-negative: {self.amount}")

    def to_dict(self) -> Dict:
        d = asdict(self)
        d["amount"] = str(self.amount) if self.amount is not None else None
        d["currency"] = self.currency.value if self.currency else None
        return d

    @classmethod
    def from_dict(cls, d: Dict) -> "ExtractedPayment":
        data = dict(d)
        if data.get("amount") is not None:
            data["amount"] = Decimal(data["amount"])
        if data.get("currency"):
            data["currency"] = Currency(data["currency"])
        return cls(**data)


@dataclass
class PendingObligation:
    id: str
    order_id: str
    buyer_id: str
    amount: Decimal
    currency: Currency
    buyer_name: Optional[str] = None
    reference: Optional[str] = None
    deadline: Optional[str] = None
    status: ObligationStatus = ObligationStatus.AWAITING_PAYMENT


@dataclass
class MatchCandidate:
    obligation_id: str
    score: int
    reasons: List[str]
    breakdown: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class VerificationDecision:
    submission_id: str
    kind: DecisionKind
    obligation_id: Optional[str]
    score: int
    reasons: List[str]
    decided_at: str = field(default_factory=lambda: datetime.utcnow().isoformat())
    decided_by: str = "system"
    candidates: List[Dict] = field(default_factory=list)
    id: Optional[int] = None


@dataclass
class PaymentProofSubmission:
    id: str
    image_ref: str
    content_hash: str
    state: SubmissionState = SubmissionState.RECEIVED
    obligation_id: Optional[str] = None
    hinted_obligation_id: Optional[str] = None
    duplicate_of: Optional[str] = None
    cancel_requested: bool = False
    attempts: int = 0
    created_at: str = ""
    updated_at: str = ""


@dataclass
class AuditLogEntry:
    ts: str
    level: str
    actor: str
    action: str
    submission_id: Optional[str]
    target_ids: List[str]
    score: Optional[int]
    result: str
    reasons: List[str] = field(default_factory=list)
    error: Optional[str] = None
