from datetime import datetime, timedelta, timezone
from decimal import Decimal

from conftest import obligation
from candidate_retriever import CandidateRetriever
from payment_models import Currency, ExtractedPayment, ObligationStatus


def _extracted(**kw):
    kw.setdefault("amount", Decimal("1500"))
    kw.setdefault("currency", Currency.PHP)
    return ExtractedPayment(submission_id="s1", **kw)


def test_reference_match_finds_obligation_even_when_amount_differs(cfg, obligations):
    obligations.upsert(obligation("ob1", amount="999.00", reference="PH-K9X2M4QZ"))
    found = CandidateRetriever(obligations, cfg).find_candidates(_extracted(reference="ph k9x2m4qz"))
    assert [o.id for o in found] == ["ob1"]


def test_amount_tolerance_and_currency(cfg, obligations):
    obligations.upsert(obligation("in-1pct", amount="1485.00", reference=None))
    obligations.upsert(obligation("exact", amount="1500.00", reference=None))
    obligations.upsert(obligation("too-far", amount="1530.00", reference=None))
    obligations.upsert(obligation("other-cur", amount="1500.00", currency=Currency.MYR, reference=None))
    found = CandidateRetriever(obligations, cfg).find_candidates(_extracted())
    assert [o.id for o in found] == ["exact", "in-1pct"]


def test_small_amounts_use_fixed_epsilon(cfg, obligations):
    obligations.upsert(obligation("ob1", amount="50.80", reference=None))
    found = CandidateRetriever(obligations, cfg).find_candidates(_extracted(amount=Decimal("50.00")))
    assert [o.id for o in found] == ["ob1"]


def test_only_awaiting_and_unexpired_obligations(cfg, obligations):
    obligations.upsert(obligation("paid", reference="GC123456789", status=ObligationStatus.PAID))
    obligations.upsert(obligation("expired", reference=None, deadline="2000-01-01T00:00:00"))
    obligations.upsert(obligation("open", reference=None, deadline="2999-01-01T00:00:00"))
    found = CandidateRetriever(obligations, cfg).find_candidates(_extracted(reference="GC123456789"))
    assert [o.id for o in found] == ["open"]


def test_nothing_plausible_returns_empty_list(cfg, obligations):
    obligations.upsert(obligation("ob1", amount="99.00", reference="OTHER"))
    assert CandidateRetriever(obligations, cfg).find_candidates(_extracted()) == []


def test_hinted_obligation_is_included(cfg, obligations):
    obligations.upsert(obligation("hint", amount="700.00", reference=None))
    found = CandidateRetriever(obligations, cfg).find_candidates(_extracted(), hinted_obligation_id="hint")
    assert [o.id for o in found] == ["hint"]


def test_too_many_amount_matches_are_narrowed_by_buyer_name(cfg, obligations):
    cfg["retrieval"]["max_candidates"] = 3
    for i in range(6):
        obligations.upsert(obligation(f"ob{i}", reference=None, buyer_name=f"Buyer Number{i}"))
    obligations.upsert(obligation("maria", reference=None, buyer_name="Maria Clara Santos"))
    found = CandidateRetriever(obligations, cfg).find_candidates(_extracted(sender="MARIA SANTOS"))
    assert [o.id for o in found] == ["maria"]


def test_result_set_is_capped(cfg, obligations):
    cfg["retrieval"]["max_candidates"] = 4
    for i in range(10):
        obligations.upsert(obligation(f"ob{i}", reference=None))
    found = CandidateRetriever(obligations, cfg).find_candidates(_extracted())
    assert len(found) == 4


def test_masked_sender_keeps_closest_amounts_instead_of_nothing(cfg, obligations):
    cfg["retrieval"]["max_candidates"] = 3
    for i, amount in enumerate(["1500.00", "1499.00", "1510.00", "1501.00", "1490.00"]):
        obligations.upsert(obligation(f"ob{i}", amount=amount, reference=None, buyer_name=f"Buyer Number{i}"))
    found = CandidateRetriever(obligations, cfg).find_candidates(_extracted(sender="J*** D."))
    assert [o.id for o in found] == ["ob0", "ob1", "ob3"]


def test_deadline_with_offset_is_compared_in_utc(cfg, obligations):
    manila = timezone(timedelta(hours=8))
    past = datetime.now(manila) - timedelta(hours=2)
    future = datetime.now(manila) + timedelta(hours=2)
    obligations.upsert(obligation("late", reference=None, deadline=past.isoformat(timespec="seconds")))
    obligations.upsert(obligation("on-time", reference=None, deadline=future.isoformat(timespec="seconds")))
    found = CandidateRetriever(obligations, cfg).find_candidates(_extracted())
    assert [o.id for o in found] == ["on-time"]
    assert obligations.get("on-time").deadline.endswith("+00:00")


def test_reference_hit_past_offset_deadline_is_not_a_candidate(cfg, obligations):
    past = datetime.now(timezone(timedelta(hours=8))) - timedelta(minutes=30)
    obligations.upsert(obligation("late", amount="999.00", reference="GC123456789", deadline=past.isoformat()))
    found = CandidateRetriever(obligations, cfg).find_candidates(_extracted(reference="GC123456789"))
    assert found == []


def test_date_only_deadline_means_midnight_utc(cfg, obligations):
    yesterday = (datetime.now(timezone.utc) - timedelta(days=1)).date().isoformat()
    tomorrow = (datetime.now(timezone.utc) + timedelta(days=2)).date().isoformat()
    obligations.upsert(obligation("gone", reference=None, deadline=yesterday))
    obligations.upsert(obligation("open", reference=None, deadline=tomorrow))
    found = CandidateRetriever(obligations, cfg).find_candidates(_extracted())
    assert [o.id for o in found] == ["open"]
