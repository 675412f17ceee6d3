from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest

from conftest import make_png
from config_loader import load_verification_config
from execution_lock import ExecutionLock
from image_checks import ImageVault, content_hash, validate_image
from notifier import EventBus, SlackDecisionNotifier, VerificationDecided
from verification_errors import ConfigError, MalformedInputError


def _clear_env(monkeypatch):
    for name in ("VERIFICATION_DB", "PROOF_UPLOAD_DIR", "OCR_SERVICE_URL", "VISION_API_BASE",
                 "VISION_API_KEY", "VISION_MODEL", "SLACK_WEBHOOK_URL", "VERIFICATION_CONFIG"):
        monkeypatch.delenv(name, raising=False)


def test_config_defaults_when_file_missing(tmp_path, monkeypatch):
    _clear_env(monkeypatch)
    monkeypatch.chdir(tmp_path)
    cfg = load_verification_config(str(tmp_path / "nope.yml"))
    assert cfg["thresholds"]["auto_approve"] == 90
    assert cfg["weights"] == {"amount": 40, "currency": 20, "reference": 25, "sender": 15}
    assert cfg["extraction"]["ocr_languages"] == "eng+fil+msa"


def test_config_yaml_merge_and_env_override(tmp_path, monkeypatch):
    _clear_env(monkeypatch)
    monkeypatch.chdir(tmp_path)
    path = tmp_path / "verification.yml"
    path.write_text("thresholds:\n  auto_approve: 95\n  low_score_policy: reject\n", encoding="utf-8")
    monkeypatch.setenv("VERIFICATION_DB", str(tmp_path / "x.db"))
    cfg = load_verification_config(str(path))
    assert cfg["thresholds"]["auto_approve"] == 95
    assert cfg["thresholds"]["review"] == 60
    assert cfg["thresholds"]["low_score_policy"] == "reject"
    assert cfg["storage"]["db_path"] == str(tmp_path / "x.db")


@pytest.mark.parametrize("yml", [
    "thresholds:\n  review: 95\n",
    "thresholds:\n  low_score_policy: ignore\n",
    "weights:\n  amount: 50\n",
    "amount:\n  min: '0'\n",
])
def test_invalid_config_is_rejected(tmp_path, monkeypatch, yml):
    _clear_env(monkeypatch)
    monkeypatch.chdir(tmp_path)
    path = tmp_path / "bad.yml"
    path.write_text(yml, encoding="utf-8")
    with pytest.raises(ConfigError):
        load_verification_config(str(path))


def test_shipped_config_is_valid(monkeypatch, tmp_path):
    _clear_env(monkeypatch)
    monkeypatch.chdir(tmp_path)
    cfg = load_verification_config()
    assert cfg["retrieval"]["max_candidates"] == 50


def test_lease_excludes_other_workers_until_expiry(store):
    lock = ExecutionLock(store, timeout=60)
    assert lock.acquire_lock("s1", "w1")
    assert not lock.acquire_lock("s1", "w2")
    assert lock.acquire_lock("s1", "w1")
    assert not lock.release_lock("s1", "w2")
    assert lock.release_lock("s1", "w1")
    assert lock.get_lock_info("s1") is None


def test_expired_lease_can_be_taken_over(store):
    lock = ExecutionLock(store, timeout=60)
    with store.transaction() as con:
        con.execute(
            "INSERT INTO leases(submission_id, worker_id, expires_at) VALUES (?,?,?)",
            ("s1", "crashed", (datetime.utcnow() - timedelta(seconds=1)).isoformat()),
        )
    assert lock.acquire_lock("s1", "w2")
    assert lock.get_lock_info("s1")["worker_id"] == "w2"


def test_hold_releases_on_exit(store):
    lock = ExecutionLock(store, timeout=60)
    with lock.hold("s1", "w1") as acquired:
        assert acquired
        with lock.hold("s1", "w2") as other:
            assert not other
    assert lock.get_lock_info("s1") is None


def test_image_validation(tmp_path):
    png = make_png()
    assert validate_image(png) == "PNG"
    with pytest.raises(MalformedInputError):
        validate_image(b"")
    with pytest.raises(MalformedInputError):
        validate_image(b"definitely not an image")
    with pytest.raises(MalformedInputError):
        validate_image(png, max_bytes=10)

    vault = ImageVault(str(tmp_path / "uploads"))
    ref = vault.put(content_hash(png), png)
    assert vault.get(ref) == png
    assert vault.put(content_hash(png), png) == ref


def test_event_bus_isolates_failing_subscribers():
    received = []

    def broken(event):
        raise RuntimeError("boom")

    bus = EventBus()
    bus.subscribe(broken)
    bus.subscribe(received.append)
    event = VerificationDecided("s1", "manual_review", "ob1", 70, ["below_auto_threshold"])
    bus.publish(event)
    assert received == [event]


@patch('notifier.requests.post')
def test_slack_notifier_posts_to_webhook(mock_post):
    mock_post.return_value = MagicMock(status_code=200)
    notifier = SlackDecisionNotifier("https://hooks.slack.test/abc")
    notifier(VerificationDecided("s1", "manual_review", "ob1", 83, ["below_auto_threshold"]))

    args, kwargs = mock_post.call_args
    assert args[0] == "https://hooks.slack.test/abc"
    assert "s1" in kwargs["json"]["text"]
    assert "below_auto_threshold" in kwargs["json"]["text"]


@patch('notifier.requests.post')
def test_slack_notifier_skips_without_webhook(mock_post):
    SlackDecisionNotifier(None)(VerificationDecided("s1", "auto_approved", "ob1", 100))
    mock_post.assert_not_called()
