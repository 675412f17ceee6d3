import sqlite3
import threading
from decimal import Decimal

import pytest

from conftest import obligation
from payment_models import (
    Currency,
    DecisionKind,
    ExtractedPayment,
    ObligationStatus,
    PaymentProofSubmission,
    SubmissionState,
    VerificationDecision,
)
from state_store import StateStore
from verification_errors import ConcurrencyConflictError, PersistenceError


def _sub(sid, digest="h1"):
    return PaymentProofSubmission(id=sid, image_ref=f"/tmp/{digest}.bin", content_hash=digest)


def _decision(sid, kind=DecisionKind.MANUAL_REVIEW, oid=None, by="system"):
    return VerificationDecision(submission_id=sid, kind=kind, obligation_id=oid, score=70, reasons=["r"], decided_by=by)


def test_db_path_follows_env(tmp_path, monkeypatch):
    db = tmp_path / "env.db"
    monkeypatch.setenv("VERIFICATION_DB", str(db))
    s = StateStore()
    s.init_db()
    assert s.db_path == str(db)
    assert db.exists()


def test_create_submission_is_idempotent_and_aliases_duplicates(store):
    sub, created = store.create_submission(_sub("s1"))
    assert created and sub.duplicate_of is None

    again, created = store.create_submission(_sub("s1"))
    assert not created and again.id == "s1"

    dup, created = store.create_submission(_sub("s2"))
    assert created and dup.duplicate_of == "s1"
    assert store.list_aliases("s1") == ["s2"]
    assert store.list_unfinished() == ["s1"]


def test_cancelled_original_is_not_a_dedupe_target(store):
    store.create_submission(_sub("s1"))
    assert store.request_cancel("s1") == SubmissionState.CANCELLED
    fresh, _ = store.create_submission(_sub("s2"))
    assert fresh.duplicate_of is None


def test_duplicates_of_cancelled_original_are_promoted(store):
    store.create_submission(_sub("s1"))
    store.create_submission(_sub("s2"))
    store.create_submission(_sub("s3"))
    assert store.promote_alias("s1") is None

    store.request_cancel("s1")
    assert store.list_unfinished() == ["s2", "s3"]
    assert store.promote_alias("s1") == "s2"

    assert store.get_submission("s2").duplicate_of is None
    assert store.get_submission("s3").duplicate_of == "s2"
    assert store.list_aliases("s1") == []
    assert store.list_unfinished() == ["s2"]
    assert store.promote_alias("s1") is None
    assert "submission:promoted" in [e.action for e in store.list_audit("s2")]


def test_transition_is_compare_and_swap(store):
    store.create_submission(_sub("s1"))
    assert store.transition("s1", [SubmissionState.RECEIVED], SubmissionState.EXTRACTING)
    assert not store.transition("s1", [SubmissionState.RECEIVED], SubmissionState.EXTRACTING)
    assert store.get_submission("s1").state == SubmissionState.EXTRACTING
    actions = [e.action for e in store.list_audit("s1")]
    assert actions == ["submission:received", "state:received->extracting"]


def test_decisions_supersede_and_keep_history(store):
    store.create_submission(_sub("s1"))
    assert store.commit_decision(_decision("s1"), SubmissionState.MANUAL_REVIEW)
    assert store.commit_decision(_decision("s1", DecisionKind.REJECTED, by="reviewer-1"), SubmissionState.RESOLVED)

    current = store.get_current_decision("s1")
    assert current.kind == DecisionKind.REJECTED
    assert current.decided_by == "reviewer-1"
    assert [d.kind for d in store.get_decision_history("s1")] == [DecisionKind.MANUAL_REVIEW, DecisionKind.REJECTED]


def test_only_one_current_decision_per_submission(store):
    store.create_submission(_sub("s1"))
    store.commit_decision(_decision("s1"), SubmissionState.MANUAL_REVIEW)
    con = sqlite3.connect(store.db_path)
    try:
        with pytest.raises(sqlite3.IntegrityError):
            con.execute(
                "INSERT INTO decisions(submission_id, kind, score, superseded) VALUES ('s1', 'rejected', 0, 0)"
            )
    finally:
        con.close()


def test_auto_approval_is_atomic(store, obligations):
    obligations.upsert(obligation("ob1"))
    store.create_submission(_sub("s1", "h1"))
    store.create_submission(_sub("s2", "h2"))

    assert store.commit_auto_approval(_decision("s1", DecisionKind.AUTO_APPROVED, "ob1"), obligations)
    assert obligations.get("ob1").status == ObligationStatus.PAID
    assert store.get_submission("s1").obligation_id == "ob1"

    with pytest.raises(ConcurrencyConflictError):
        store.commit_auto_approval(_decision("s2", DecisionKind.AUTO_APPROVED, "ob1"), obligations)
    # 負けた側は何も書き込まれていない
    assert store.get_current_decision("s2") is None
    assert store.get_submission("s2").state == SubmissionState.RECEIVED
    assert not [e for e in store.list_audit("s2") if e.action.startswith("decision:")]


def test_concurrent_cas_has_single_winner(store, obligations):
    obligations.upsert(obligation("ob1"))
    results = []

    def claim():
        results.append(obligations.try_mark_paid("ob1", ObligationStatus.AWAITING_PAYMENT))

    threads = [threading.Thread(target=claim) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert results.count(True) == 1


def test_cancel_flag_discards_system_decision(store):
    store.create_submission(_sub("s1"))
    store.transition("s1", [SubmissionState.RECEIVED], SubmissionState.EXTRACTING)
    assert store.request_cancel("s1") == SubmissionState.EXTRACTING
    assert not store.commit_decision(_decision("s1"), SubmissionState.MANUAL_REVIEW)
    assert store.get_submission("s1").state == SubmissionState.CANCELLED
    assert store.get_current_decision("s1") is None


def test_extraction_versions_are_kept(store):
    store.create_submission(_sub("s1"))
    store.save_extraction(ExtractedPayment(submission_id="s1", amount=Decimal("10.50"), currency=Currency.MYR))
    v2 = store.next_extraction_version("s1")
    store.save_extraction(ExtractedPayment(submission_id="s1", amount=Decimal("11.00"), currency=Currency.MYR, version=v2))
    assert v2 == 2
    assert store.get_extraction("s1").amount == Decimal("11.00")
    assert store.get_extraction("s1", version=1).amount == Decimal("10.50")
    assert store.get_extraction("s1", version=1).currency == Currency.MYR


def test_unavailable_store_raises_persistence_error(tmp_path):
    broken = StateStore(str(tmp_path / "missing-dir" / "state.db"))
    with pytest.raises(PersistenceError):
        broken.init_db()


def test_processing_stats(store):
    store.create_submission(_sub("s1", "h1"))
    store.create_submission(_sub("s2", "h2"))
    store.create_submission(_sub("s3", "h1"))
    store.commit_decision(_decision("s1"), SubmissionState.MANUAL_REVIEW)
    stats = store.get_processing_stats()
    assert stats["total_submissions"] == 3
    assert stats["duplicates"] == 1
    assert stats["by_decision"] == {"manual_review": 1}
    assert stats["average_score"] == 70
    assert stats["auto_approval_rate"] == 0.0
