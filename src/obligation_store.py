"""
支払い義務（PendingObligation）のリポジトリ
注文側が所有するデータ。照合エンジンは参照と消込CASのみ行う
"""

from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Union

from payment_models import Currency, ObligationStatus, PendingObligation
from field_normalizer import normalize_reference


_COLS = "id, order_id, buyer_id, buyer_name, amount_minor, currency, reference, status, deadline"


def _to_minor(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).to_integral_value())


def utc_deadline(value: Union[str, date, datetime, None]) -> Optional[datetime]:
    """期限を UTC の aware datetime にする。オフセットなし・日付のみは UTC とみなす"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def deadline_key(value: Union[str, date, datetime, None]) -> Optional[str]:
    """比較用の固定長 UTC 文字列（SQLite で文字列比較するため）"""
    dt = utc_deadline(value)
    return dt.isoformat(timespec="microseconds") if dt else None


def _row_to_obligation(row) -> PendingObligation:
    oid, order_id, buyer_id, buyer_name, amount_minor, currency, reference, status, deadline = row
    return PendingObligation(
        id=oid,
        order_id=order_id,
        buyer_id=buyer_id,
        buyer_name=buyer_name,
        amount=(Decimal(amount_minor) / 100).quantize(Decimal("0.01")),
        currency=Currency(currency),
        reference=reference,
        deadline=deadline,
        status=ObligationStatus(status),
    )


class SqliteObligationStore:
    """StateStore と同じDBの obligations テーブルを使う実装"""

    def __init__(self, store):
        self.store = store

    def upsert(self, ob: PendingObligation):
        with self.store._conn() as con:
            con.execute(
                "INSERT OR REPLACE INTO obligations(id, order_id, buyer_id, buyer_name, amount_minor, currency, "
                "reference, reference_norm, status, deadline, updated_at) VALUES (?,?,?,?,?,?,?,?,?,?,?)",
                (
                    ob.id, ob.order_id, ob.buyer_id, ob.buyer_name, _to_minor(ob.amount), ob.currency.value,
                    ob.reference, normalize_reference(ob.reference) or None, ob.status.value, deadline_key(ob.deadline),
                    datetime.utcnow().isoformat(),
                ),
            )

    def get(self, obligation_id: str) -> Optional[PendingObligation]:
        with self.store._conn() as con:
            row = con.execute(f"SELECT {_COLS} FROM obligations WHERE id=?", (obligation_id,)).fetchone()
            return _row_to_obligation(row) if row else None

    def list_awaiting_payment(self, filter: Optional[Dict] = None) -> List[PendingObligation]:
        """支払い待ちの義務を返す。

        filter:
            currency: Currency
            amount_min / amount_max: Decimal（両端含む）
            as_of: 基準日時（ISO文字列または datetime）。期限切れを除外
            limit: 最大件数
        """
        f = filter or {}
        sql = f"SELECT {_COLS} FROM obligations WHERE status=?"
        params: list = [ObligationStatus.AWAITING_PAYMENT.value]
        if f.get("currency"):
            sql += " AND currency=?"
            params.append(Currency(f["currency"]).value)
        if f.get("amount_min") is not None:
            sql += " AND amount_minor >= ?"
            params.append(_to_minor(f["amount_min"]))
        if f.get("amount_max") is not None:
            sql += " AND amount_minor <= ?"
            params.append(_to_minor(f["amount_max"]))
        if f.get("as_of"):
            sql += " AND (deadline IS NULL OR deadline >= ?)"
            params.append(deadline_key(f["as_of"]))
        if f.get("amount_min") is not None and f.get("amount_max") is not None:
            # 金額の中心に近い順
            sql += " ORDER BY ABS(amount_minor - ?), id"
            params.append((_to_minor(f["amount_min"]) + _to_minor(f["amount_max"])) // 2)
        else:
            sql += " ORDER BY id"
        sql += " LIMIT ?"
        params.append(int(f.get("limit", 100)))
        with self.store._conn() as con:
            return [_row_to_obligation(r) for r in con.execute(sql, params).fetchall()]

    def find_by_reference(self, reference: str) -> List[PendingObligation]:
        norm = normalize_reference(reference)
        if not norm:
            return []
        with self.store._conn() as con:
            cur = con.execute(f"SELECT {_COLS} FROM obligations WHERE reference_norm=?", (norm,))
            return [_row_to_obligation(r) for r in cur.fetchall()]

    def try_mark_paid(
        self,
        obligation_id: str,
        expected_status: ObligationStatus = ObligationStatus.AWAITING_PAYMENT,
        submission_id: Optional[str] = None,
        con=None,
    ) -> bool:
        """楽観的CAS: 状態が expected_status のときだけ paid にする"""
        params = (
            ObligationStatus.PAID.value, submission_id, datetime.utcnow().isoformat(),
            obligation_id, ObligationStatus(expected_status).value,
        )
        sql = "UPDATE obligations SET status=?, paid_by_submission=?, updated_at=? WHERE id=? AND status=?"
        if con is not None:
            return con.execute(sql, params).rowcount == 1
        with self.store.transaction() as c:
            return c.execute(sql, params).rowcount == 1
