from decimal import Decimal

from conftest import obligation
from payment_models import Currency, ExtractedPayment
from matcher import rank_candidates, score_match


def _extracted(**kw):
    kw.setdefault("amount", Decimal("1500"))
    kw.setdefault("currency", Currency.PHP)
    return ExtractedPayment(submission_id="s1", **kw)


def test_exact_amount_currency_reference_scores_100(cfg):
    ep = _extracted(reference="GC123456789")
    score, reasons = score_match(ep, obligation(reference="GC123456789"), cfg)
    assert score == 100
    assert any(r.startswith("amount≈") for r in reasons)
    assert any(r.startswith("reference=") for r in reasons)


def test_one_percent_off_without_reference_lands_in_review_band(cfg):
    ep = _extracted()
    score, reasons = score_match(ep, obligation(amount="1485.00", reference="PH-AAAA1111"), cfg)
    # 40点中30点 + 通貨20点 = 50/60
    assert score == 83
    assert cfg["thresholds"]["review"] <= score < cfg["thresholds"]["auto_approve"]
    assert any("5% band" in r for r in reasons)


def test_amount_beyond_outer_band_gets_nothing(cfg):
    ep = _extracted(reference="GC123456789")
    score, reasons = score_match(ep, obligation(amount="2000.00"), cfg)
    # 0 + 20 + 25 = 45/85
    assert score == 53
    assert any("off" in r for r in reasons)


def test_reference_partial_and_mismatch(cfg):
    partial, _ = score_match(_extracted(reference="123456789"), obligation(reference="GC123456789"), cfg)
    mismatch, reasons = score_match(_extracted(reference="ZZ99999999"), obligation(reference="GC123456789"), cfg)
    assert partial == int((40 + 20 + 15) * 100 / 85 + 0.5)
    assert mismatch == int(60 * 100 / 85 + 0.5)
    assert any("reference_mismatch" in r for r in reasons)


def test_reference_comparison_ignores_case_spaces_and_dashes(cfg):
    score, _ = score_match(_extracted(reference="ph-abcd 1234"), obligation(reference="PH-ABCD1234"), cfg)
    assert score == 100


def test_sender_containment_and_shared_tokens(cfg):
    full, _ = score_match(_extracted(sender="JUAN DELA CRUZ"), obligation(reference=None, buyer_name="Juan Dela Cruz Jr"), cfg)
    token, reasons = score_match(_extracted(sender="Juan Santos"), obligation(reference=None, buyer_name="Juan Reyes"), cfg)
    none, _ = score_match(_extracted(sender="Pedro Lim"), obligation(reference=None, buyer_name="Maria Reyes"), cfg)
    assert full == 100
    assert token == int((60 + 8) * 100 / 75 + 0.5)
    assert any(r.startswith("sender_tokens=juan") for r in reasons)
    assert none == 80


def test_currency_mismatch(cfg):
    score, reasons = score_match(_extracted(currency=Currency.MYR, reference="GC123456789"), obligation(), cfg)
    assert score == int(65 * 100 / 85 + 0.5)
    assert "currency_mismatch MYR != PHP" in reasons


def test_score_is_deterministic_and_bounded(cfg):
    samples = [
        (_extracted(reference="GC123456789", sender="Ana"), obligation(buyer_name="Ana Cruz")),
        (_extracted(amount=Decimal("1.00")), obligation(amount="99999.00")),
        (ExtractedPayment(submission_id="s1"), obligation()),
        (_extracted(amount=Decimal("1510"), sender="x"), obligation(amount="1500.00", buyer_name="y")),
    ]
    for ep, ob in samples:
        first = score_match(ep, ob, cfg)
        for _ in range(5):
            assert score_match(ep, ob, cfg) == first
        assert 0 <= first[0] <= 100


def test_rank_candidates_sorts_descending_with_stable_ties(cfg):
    ep = _extracted(reference="GC123456789")
    obs = [
        obligation("b", amount="1600.00", reference="OTHER12345"),
        obligation("a", reference="GC123456789"),
        obligation("c", amount="1600.00", reference="OTHER12345"),
    ]
    ranked = rank_candidates(ep, obs, cfg)
    assert [c.obligation_id for c in ranked] == ["a", "b", "c"]
    assert ranked[0].breakdown["reference"] == 25
    assert ranked[1].breakdown["reference"] == 0
