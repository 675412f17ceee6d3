from datetime import datetime, timezone
from typing import Dict, List, Optional

from loguru import logger
from rapidfuzz import fuzz

from payment_models import ExtractedPayment, ObligationStatus, PendingObligation
from matcher import amount_tolerance
from obligation_store import utc_deadline


class CandidateRetriever:
    """抽出結果に対して、照合対象になり得る支払い待ちの義務を集める。

    参照番号の完全一致 ∪ 金額許容範囲内（同一通貨）∪ 件数過多時の名前絞り込み。
    """

    def __init__(self, obligations, cfg: Dict):
        self.obligations = obligations
        self.cfg = cfg
        r = cfg.get("retrieval", {})
        self.max_candidates = int(r.get("max_candidates", 50))
        self.name_match_min = int(r.get("name_match_min", 60))

    def _usable(self, ob: PendingObligation, as_of: datetime) -> bool:
        if ob.status != ObligationStatus.AWAITING_PAYMENT:
            return False
        deadline = utc_deadline(ob.deadline)
        return deadline is None or deadline >= as_of

    def find_candidates(self, extracted: ExtractedPayment, hinted_obligation_id: Optional[str] = None) -> List[PendingObligation]:
        as_of = datetime.now(timezone.utc)
        found: Dict[str, PendingObligation] = {}

        # 1. 参照番号の完全一致
        if extracted.reference:
            for ob in self.obligations.find_by_reference(extracted.reference):
                if self._usable(ob, as_of):
                    found.setdefault(ob.id, ob)

        # 2. ヒントされた義務
        if hinted_obligation_id:
            ob = self.obligations.get(hinted_obligation_id)
            if ob and self._usable(ob, as_of):
                found.setdefault(ob.id, ob)

        # 3. 金額（±1% または固定イプシロン）かつ同一通貨
        if extracted.amount is not None and extracted.currency is not None:
            tol = amount_tolerance(extracted.amount, self.cfg)
            query = {
                "currency": extracted.currency,
                "amount_min": extracted.amount - tol,
                "amount_max": extracted.amount + tol,
                "as_of": as_of,
                # 上限超過を検知するため1件多く取る
                "limit": self.max_candidates + 1,
            }
            by_amount = self.obligations.list_awaiting_payment(query)
            room = self.max_candidates - len(found)
            if len(by_amount) > room:
                if extracted.sender:
                    query["limit"] = self.max_candidates * 20
                    by_amount = self.obligations.list_awaiting_payment(query)
                by_amount = self._narrow_by_name(extracted, by_amount, room)
            for ob in by_amount:
                found.setdefault(ob.id, ob)

        candidates = list(found.values())[: self.max_candidates]
        logger.debug(
            "candidates for {sid}: {n} (ref={ref}, amount={amount} {cur})",
            sid=extracted.submission_id, n=len(candidates), ref=extracted.reference,
            amount=extracted.amount, cur=extracted.currency.value if extracted.currency else None,
        )
        return candidates

    def _narrow_by_name(self, extracted: ExtractedPayment, obligations: List[PendingObligation], room: int) -> List[PendingObligation]:
        """金額だけでは多すぎる場合、送金者名のトークン一致で絞る"""
        if room <= 0:
            return []
        if not extracted.sender:
            logger.warning(
                "amount match overflow for {sid} with no sender name; truncating to {room}",
                sid=extracted.submission_id, room=room,
            )
            return obligations[:room]
        scored = []
        for ob in obligations:
            sim = fuzz.token_set_ratio(extracted.sender, ob.buyer_name or "", processor=str.lower)
            if sim >= self.name_match_min:
                scored.append((sim, ob))
        if not scored:
            # マスクされた送金者名（"J*** D." など）はどの名前にも一致しない
            logger.warning(
                "no buyer name matched sender {sender!r} for {sid}; keeping {room} closest amounts",
                sender=extracted.sender, sid=extracted.submission_id, room=room,
            )
            return obligations[:room]
        scored.sort(key=lambda x: (-x[0], x[1].id))
        return [ob for _, ob in scored[:room]]
