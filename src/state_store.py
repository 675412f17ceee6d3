import json
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from loguru import logger

from payment_models import (
    AuditLogEntry,
    DecisionKind,
    ExtractedPayment,
    ObligationStatus,
    PaymentProofSubmission,
    SubmissionState,
    VerificationDecision,
)
from verification_errors import ConcurrencyConflictError, PersistenceError


def _get_db_path() -> str:
    """環境変数から毎回DBパスを取得（テストでの monkeypatch に追従するため）。"""
    return os.getenv("VERIFICATION_DB", "verification_state.db")


def _now() -> str:
    return datetime.utcnow().isoformat()


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS submissions (
      id TEXT PRIMARY KEY,
      obligation_id TEXT,
      hinted_obligation_id TEXT,
      image_ref TEXT,
      content_hash TEXT,
      state TEXT,
      cancel_requested INTEGER DEFAULT 0,
      attempts INTEGER DEFAULT 0,
      duplicate_of TEXT,
      created_at TEXT,
      updated_at TEXT
    );
    """,
    "CREATE INDEX IF NOT EXISTS ix_submissions_hash ON submissions(content_hash);",
    """
    CREATE TABLE IF NOT EXISTS extractions (
      submission_id TEXT,
      version INTEGER,
      payload_json TEXT,
      created_at TEXT,
      PRIMARY KEY (submission_id, version)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS decisions (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      submission_id TEXT,
      kind TEXT,
      obligation_id TEXT,
      score INTEGER,
      reasons_json TEXT,
      candidates_json TEXT,
      decided_at TEXT,
      decided_by TEXT,
      superseded INTEGER DEFAULT 0
    );
    """,
    # 提出ごとに「現在の判定」は1件のみ
    "CREATE UNIQUE INDEX IF NOT EXISTS ux_decisions_current ON decisions(submission_id) WHERE superseded = 0;",
    """
    CREATE TABLE IF NOT EXISTS audit_log (
      ts TEXT,
      level TEXT,
      actor TEXT,
      action TEXT,
      submission_id TEXT,
      target_ids TEXT,
      score INTEGER,
      result TEXT,
      reasons TEXT,
      error TEXT
    );
    """,
    "CREATE INDEX IF NOT EXISTS ix_audit_submission ON audit_log(submission_id);",
    """
    CREATE TABLE IF NOT EXISTS obligations (
      id TEXT PRIMARY KEY,
      order_id TEXT,
      buyer_id TEXT,
      buyer_name TEXT,
      amount_minor INTEGER,
      currency TEXT,
      reference TEXT,
      reference_norm TEXT,
      status TEXT,
      deadline TEXT,
      paid_by_submission TEXT,
      updated_at TEXT
    );
    """,
    "CREATE INDEX IF NOT EXISTS ix_obligations_ref ON obligations(reference_norm);",
    "CREATE INDEX IF NOT EXISTS ix_obligations_amount ON obligations(status, currency, amount_minor);",
    """
    CREATE TABLE IF NOT EXISTS leases (
      submission_id TEXT PRIMARY KEY,
      worker_id TEXT,
      expires_at TEXT
    );
    """,
]

_SUBMISSION_COLS = (
    "id, obligation_id, hinted_obligation_id, image_ref, content_hash, state, "
    "cancel_requested, attempts, duplicate_of, created_at, updated_at"
)
_DECISION_COLS = "id, submission_id, kind, obligation_id, score, reasons_json, candidates_json, decided_at, decided_by"


def _row_to_submission(row) -> PaymentProofSubmission:
    (sid, obligation_id, hinted, image_ref, content_hash, state, cancel, attempts, dup, created, updated) = row
    return PaymentProofSubmission(
        id=sid,
        image_ref=image_ref,
        content_hash=content_hash,
        state=SubmissionState(state),
        obligation_id=obligation_id,
        hinted_obligation_id=hinted,
        duplicate_of=dup,
        cancel_requested=bool(cancel),
        attempts=attempts or 0,
        created_at=created,
        updated_at=updated,
    )


def _row_to_decision(row) -> VerificationDecision:
    did, sid, kind, obligation_id, score, reasons_json, candidates_json, decided_at, decided_by = row
    return VerificationDecision(
        id=did,
        submission_id=sid,
        kind=DecisionKind(kind),
        obligation_id=obligation_id,
        score=score,
        reasons=json.loads(reasons_json or "[]"),
        candidates=json.loads(candidates_json or "[]"),
        decided_at=decided_at,
        decided_by=decided_by,
    )


class StateStore:
    """提出・抽出バージョン・判定・監査ログ・リースのSQLite永続化"""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path or _get_db_path()

    @contextmanager
    def _conn(self):
        try:
            con = sqlite3.connect(self.db_path, timeout=30)
        except sqlite3.Error as e:
            raise PersistenceError(f"cannot open {self.db_path}: {e}") from e
        try:
            con.execute("PRAGMA journal_mode=WAL;")
            yield con
            con.commit()
        except sqlite3.Error as e:
            con.rollback()
            raise PersistenceError(f"sqlite error: {e}") from e
        finally:
            con.close()

    @contextmanager
    def transaction(self):
        """BEGIN IMMEDIATE の書き込みトランザクション。例外時は全てロールバック"""
        try:
            con = sqlite3.connect(self.db_path, timeout=30, isolation_level=None)
        except sqlite3.Error as e:
            raise PersistenceError(f"cannot open {self.db_path}: {e}") from e
        try:
            con.execute("BEGIN IMMEDIATE")
            yield con
            con.execute("COMMIT")
        except sqlite3.Error as e:
            if con.in_transaction:
                con.execute("ROLLBACK")
            raise PersistenceError(f"sqlite error: {e}") from e
        except BaseException:
            if con.in_transaction:
                con.execute("ROLLBACK")
            raise
        finally:
            con.close()

    def init_db(self):
        with self._conn() as con:
            for stmt in SCHEMA:
                con.execute(stmt)

    # ---- audit ----

    def write_audit(
        self,
        level: str,
        actor: str,
        action: str,
        submission_id: Optional[str],
        target_ids: list,
        score: Optional[int],
        result: str,
        reasons: Optional[List[str]] = None,
        error: str | None = None,
        con=None,
    ):
        params = (
            _now(), level, actor, action, submission_id, json.dumps(target_ids),
            score, result, json.dumps(reasons or [], ensure_ascii=False), error,
        )
        sql = (
            "INSERT INTO audit_log(ts, level, actor, action, submission_id, target_ids, score, result, reasons, error) "
            "VALUES (?,?,?,?,?,?,?,?,?,?)"
        )
        if con is not None:
            con.execute(sql, params)
            return
        with self._conn() as c:
            c.execute(sql, params)

    def list_audit(self, submission_id: str) -> List[AuditLogEntry]:
        with self._conn() as con:
            cur = con.execute(
                "SELECT ts, level, actor, action, submission_id, target_ids, score, result, reasons, error "
                "FROM audit_log WHERE submission_id=? ORDER BY rowid",
                (submission_id,),
            )
            return [
                AuditLogEntry(
                    ts=ts, level=level, actor=actor, action=action, submission_id=sid,
                    target_ids=json.loads(tids or "[]"), score=score, result=result,
                    reasons=json.loads(reasons or "[]"), error=error,
                )
                for ts, level, actor, action, sid, tids, score, result, reasons, error in cur.fetchall()
            ]

    # ---- submissions ----

    def create_submission(self, sub: PaymentProofSubmission) -> Tuple[PaymentProofSubmission, bool]:
        """提出を登録する。同一IDは既存を返し、同一ハッシュは duplicate_of で元提出に束ねる"""
        with self.transaction() as con:
            row = con.execute(f"SELECT {_SUBMISSION_COLS} FROM submissions WHERE id=?", (sub.id,)).fetchone()
            if row:
                return _row_to_submission(row), False

            original = con.execute(
                "SELECT id FROM submissions WHERE content_hash=? AND duplicate_of IS NULL AND state != ? "
                "ORDER BY created_at, rowid LIMIT 1",
                (sub.content_hash, SubmissionState.CANCELLED.value),
            ).fetchone()
            now = _now()
            sub.duplicate_of = original[0] if original else None
            sub.created_at = sub.updated_at = now
            con.execute(
                f"INSERT INTO submissions({_SUBMISSION_COLS}) VALUES (?,?,?,?,?,?,?,?,?,?,?)",
                (
                    sub.id, sub.obligation_id, sub.hinted_obligation_id, sub.image_ref, sub.content_hash,
                    sub.state.value, 0, 0, sub.duplicate_of, now, now,
                ),
            )
            action = "submission:duplicate" if sub.duplicate_of else "submission:received"
            self.write_audit(
                "INFO", "system", action, sub.id, [sub.duplicate_of] if sub.duplicate_of else [],
                None, sub.state.value, con=con,
            )
            return sub, True

    def get_submission(self, submission_id: str) -> Optional[PaymentProofSubmission]:
        with self._conn() as con:
            row = con.execute(f"SELECT {_SUBMISSION_COLS} FROM submissions WHERE id=?", (submission_id,)).fetchone()
            return _row_to_submission(row) if row else None

    def list_aliases(self, submission_id: str) -> List[str]:
        with self._conn() as con:
            cur = con.execute("SELECT id FROM submissions WHERE duplicate_of=? ORDER BY rowid", (submission_id,))
            return [r[0] for r in cur.fetchall()]

    def list_unfinished(self) -> List[str]:
        """再起動時に再投入する提出ID（判定前・未キャンセル）。元提出がキャンセル済みの重複も含む"""
        with self._conn() as con:
            cur = con.execute(
                "SELECT id FROM submissions WHERE cancel_requested=0 AND state IN (?,?,?) "
                "AND (duplicate_of IS NULL OR duplicate_of IN (SELECT id FROM submissions WHERE state=?)) "
                "ORDER BY created_at, rowid",
                (
                    SubmissionState.RECEIVED.value, SubmissionState.EXTRACTING.value, SubmissionState.SCORING.value,
                    SubmissionState.CANCELLED.value,
                ),
            )
            return [r[0] for r in cur.fetchall()]

    def promote_alias(self, original_id: str) -> Optional[str]:
        """キャンセルされた元提出の最古の重複を独立した提出に昇格し、残りの重複を付け替える"""
        with self.transaction() as con:
            row = con.execute("SELECT state FROM submissions WHERE id=?", (original_id,)).fetchone()
            if not row or row[0] != SubmissionState.CANCELLED.value:
                return None
            alias = con.execute(
                "SELECT id FROM submissions WHERE duplicate_of=? AND cancel_requested=0 AND state != ? "
                "ORDER BY created_at, rowid LIMIT 1",
                (original_id, SubmissionState.CANCELLED.value),
            ).fetchone()
            if not alias:
                return None
            promoted, now = alias[0], _now()
            con.execute("UPDATE submissions SET duplicate_of=NULL, updated_at=? WHERE id=?", (now, promoted))
            con.execute(
                "UPDATE submissions SET duplicate_of=?, updated_at=? WHERE duplicate_of=?",
                (promoted, now, original_id),
            )
            self.write_audit(
                "INFO", "system", "submission:promoted", promoted, [original_id], None,
                SubmissionState.RECEIVED.value, con=con,
            )
            return promoted

    def transition(
        self,
        submission_id: str,
        from_states: Iterable[SubmissionState],
        to_state: SubmissionState,
        actor: str = "system",
        reasons: Optional[List[str]] = None,
    ) -> bool:
        """状態遷移のCAS。現在状態が from_states に含まれる場合のみ更新し監査に残す"""
        froms = [s.value for s in from_states]
        placeholders = ",".join("?" for _ in froms)
        with self.transaction() as con:
            row = con.execute("SELECT state FROM submissions WHERE id=?", (submission_id,)).fetchone()
            cur = con.execute(
                f"UPDATE submissions SET state=?, updated_at=? WHERE id=? AND state IN ({placeholders})",
                (to_state.value, _now(), submission_id, *froms),
            )
            if cur.rowcount != 1:
                return False
            self.write_audit(
                "INFO", actor, f"state:{row[0]}->{to_state.value}", submission_id, [], None,
                to_state.value, reasons=reasons, con=con,
            )
            return True

    def request_cancel(self, submission_id: str) -> Optional[SubmissionState]:
        """キャンセル要求を立てる。未着手なら即 cancelled にする"""
        with self.transaction() as con:
            row = con.execute("SELECT state FROM submissions WHERE id=?", (submission_id,)).fetchone()
            if not row:
                return None
            state = SubmissionState(row[0])
            if state not in (SubmissionState.RECEIVED, SubmissionState.EXTRACTING, SubmissionState.SCORING):
                return state
            new_state = SubmissionState.CANCELLED if state == SubmissionState.RECEIVED else state
            con.execute(
                "UPDATE submissions SET cancel_requested=1, state=?, updated_at=? WHERE id=?",
                (new_state.value, _now(), submission_id),
            )
            self.write_audit("INFO", "system", "cancel_requested", submission_id, [], None, new_state.value, con=con)
            return new_state

    def is_cancel_requested(self, submission_id: str) -> bool:
        with self._conn() as con:
            row = con.execute("SELECT cancel_requested FROM submissions WHERE id=?", (submission_id,)).fetchone()
            return bool(row and row[0])

    def bump_attempts(self, submission_id: str) -> int:
        with self.transaction() as con:
            con.execute("UPDATE submissions SET attempts = attempts + 1 WHERE id=?", (submission_id,))
            row = con.execute("SELECT attempts FROM submissions WHERE id=?", (submission_id,)).fetchone()
            return row[0] if row else 0

    # ---- extractions ----

    def next_extraction_version(self, submission_id: str) -> int:
        with self._conn() as con:
            row = con.execute("SELECT MAX(version) FROM extractions WHERE submission_id=?", (submission_id,)).fetchone()
            return (row[0] or 0) + 1

    def save_extraction(self, extracted: ExtractedPayment):
        with self._conn() as con:
            con.execute(
                "INSERT INTO extractions(submission_id, version, payload_json, created_at) VALUES (?,?,?,?)",
                (extracted.submission_id, extracted.version, json.dumps(extracted.to_dict(), ensure_ascii=False), _now()),
            )

    def get_extraction(self, submission_id: str, version: Optional[int] = None) -> Optional[ExtractedPayment]:
        with self._conn() as con:
            if version is None:
                row = con.execute(
                    "SELECT payload_json FROM extractions WHERE submission_id=? ORDER BY version DESC LIMIT 1",
                    (submission_id,),
                ).fetchone()
            else:
                row = con.execute(
                    "SELECT payload_json FROM extractions WHERE submission_id=? AND version=?",
                    (submission_id, version),
                ).fetchone()
            return ExtractedPayment.from_dict(json.loads(row[0])) if row else None

    # ---- decisions ----

    def _record_decision(self, con, decision: VerificationDecision, state: SubmissionState):
        con.execute(
            "UPDATE decisions SET superseded=1 WHERE submission_id=? AND superseded=0",
            (decision.submission_id,),
        )
        cur = con.execute(
            "INSERT INTO decisions(submission_id, kind, obligation_id, score, reasons_json, candidates_json, "
            "decided_at, decided_by, superseded) VALUES (?,?,?,?,?,?,?,?,0)",
            (
                decision.submission_id, decision.kind.value, decision.obligation_id, decision.score,
                json.dumps(decision.reasons, ensure_ascii=False),
                json.dumps(decision.candidates, ensure_ascii=False),
                decision.decided_at, decision.decided_by,
            ),
        )
        decision.id = cur.lastrowid
        matched = decision.obligation_id if decision.kind in (DecisionKind.AUTO_APPROVED, DecisionKind.APPROVED) else None
        con.execute(
            "UPDATE submissions SET state=?, obligation_id=?, updated_at=? WHERE id=?",
            (state.value, matched, _now(), decision.submission_id),
        )
        self.write_audit(
            "INFO", decision.decided_by, f"decision:{decision.kind.value}", decision.submission_id,
            [decision.obligation_id] if decision.obligation_id else [], decision.score, state.value,
            reasons=decision.reasons, con=con,
        )

    def _cancelled(self, con, submission_id: str) -> bool:
        row = con.execute("SELECT cancel_requested FROM submissions WHERE id=?", (submission_id,)).fetchone()
        if row and row[0]:
            con.execute(
                "UPDATE submissions SET state=?, updated_at=? WHERE id=?",
                (SubmissionState.CANCELLED.value, _now(), submission_id),
            )
            self.write_audit("INFO", "system", "decision:discarded", submission_id, [], None, "cancelled", con=con)
            return True
        return False

    def commit_decision(self, decision: VerificationDecision, state: SubmissionState) -> bool:
        """判定を記録（旧判定は superseded）。キャンセル済みなら記録せず False"""
        with self.transaction() as con:
            if decision.decided_by == "system" and self._cancelled(con, decision.submission_id):
                return False
            self._record_decision(con, decision, state)
            return True

    def commit_auto_approval(self, decision: VerificationDecision, obligations) -> bool:
        """支払い義務の消込CAS + 判定 + 監査を1トランザクションで行う。

        CASに負けた場合は ConcurrencyConflictError（何も書き込まれない）。
        """
        with self.transaction() as con:
            if self._cancelled(con, decision.submission_id):
                return False
            if not obligations.try_mark_paid(
                decision.obligation_id, ObligationStatus.AWAITING_PAYMENT, decision.submission_id, con=con
            ):
                raise ConcurrencyConflictError(decision.obligation_id)
            self._record_decision(con, decision, SubmissionState.AUTO_APPROVED)
            return True

    def commit_review_approval(self, decision: VerificationDecision, obligations):
        """レビュー担当者の承認。自動承認と同じCASで消し込む"""
        with self.transaction() as con:
            if not obligations.try_mark_paid(
                decision.obligation_id, ObligationStatus.AWAITING_PAYMENT, decision.submission_id, con=con
            ):
                raise ConcurrencyConflictError(decision.obligation_id)
            self._record_decision(con, decision, SubmissionState.RESOLVED)

    def get_current_decision(self, submission_id: str) -> Optional[VerificationDecision]:
        with self._conn() as con:
            row = con.execute(
                f"SELECT {_DECISION_COLS} FROM decisions WHERE submission_id=? AND superseded=0",
                (submission_id,),
            ).fetchone()
            return _row_to_decision(row) if row else None

    def get_decision_history(self, submission_id: str) -> List[VerificationDecision]:
        with self._conn() as con:
            cur = con.execute(
                f"SELECT {_DECISION_COLS} FROM decisions WHERE submission_id=? ORDER BY id",
                (submission_id,),
            )
            return [_row_to_decision(r) for r in cur.fetchall()]

    def get_processing_stats(self) -> Dict:
        with self._conn() as con:
            by_state = dict(con.execute("SELECT state, COUNT(*) FROM submissions GROUP BY state").fetchall())
            by_kind = dict(con.execute("SELECT kind, COUNT(*) FROM decisions WHERE superseded=0 GROUP BY kind").fetchall())
            avg = con.execute("SELECT AVG(score) FROM decisions WHERE superseded=0").fetchone()[0]
            dups = con.execute("SELECT COUNT(*) FROM submissions WHERE duplicate_of IS NOT NULL").fetchone()[0]
        decided = sum(by_kind.values())
        stats = {
            "total_submissions": sum(by_state.values()),
            "duplicates": dups,
            "by_state": by_state,
            "by_decision": by_kind,
            "average_score": round(avg, 1) if avg is not None else None,
            "auto_approval_rate": round(by_kind.get(DecisionKind.AUTO_APPROVED.value, 0) / decided, 3) if decided else 0.0,
        }
        logger.debug("processing stats: {stats}", stats=stats)
        return stats
