import copy
import os
from decimal import Decimal, InvalidOperation

import yaml
from dotenv import load_dotenv

from verification_errors import ConfigError


DEFAULTS = {
    "thresholds": {
        "auto_approve": 90,
        "review": 60,
        "min_margin": 10,
        "low_score_policy": "manual_review",
        "min_field_confidence": 0.6,
        "require_identity_signal": True,
    },
    "weights": {"amount": 40, "currency": 20, "reference": 25, "sender": 15},
    "amount": {
        "tolerance_pct": 1.0,
        "min_epsilon": "1.00",
        "bands": [{"pct": 5, "ratio": 0.75}, {"pct": 10, "ratio": 0.5}],
        "min": "1.00",
        "max": "100000.00",
    },
    "extraction": {
        "field_confidence_floor": 0.75,
        "ocr_confidence_floor": 0.6,
        "ocr_languages": "eng+fil+msa",
        "timeout_seconds": 15,
        "max_image_bytes": 10 * 1024 * 1024,
    },
    "retry": {"max_attempts": 3, "base_delay": 0.5, "max_delay": 8.0, "jitter": 0.25},
    "rate_limits": {
        "text": {"rate_per_sec": 5.0, "burst": 5},
        "structured": {"rate_per_sec": 1.0, "burst": 3},
    },
    "retrieval": {"max_candidates": 50, "name_match_min": 60},
    "workers": {
        "count": 3,
        "lease_seconds": 120,
        "submission_timeout": 60,
        "requeue_base_delay": 5.0,
        "requeue_max_delay": 60.0,
    },
    "storage": {"db_path": "verification_state.db", "upload_dir": "proof_uploads"},
    "services": {
        "ocr_url": "http://localhost:8884",
        "vision_api_base": "https://api.openai.com/v1",
        "vision_api_key": None,
        "vision_model": "gpt-4o-mini",
        "slack_webhook_url": None,
    },
}

# 環境変数 -> (セクション, キー)
ENV_OVERRIDES = {
    "VERIFICATION_DB": ("storage", "db_path"),
    "PROOF_UPLOAD_DIR": ("storage", "upload_dir"),
    "OCR_SERVICE_URL": ("services", "ocr_url"),
    "VISION_API_BASE": ("services", "vision_api_base"),
    "VISION_API_KEY": ("services", "vision_api_key"),
    "VISION_MODEL": ("services", "vision_model"),
    "SLACK_WEBHOOK_URL": ("services", "slack_webhook_url"),
}


def _default_path() -> str:
    return os.path.join(os.path.dirname(os.path.dirname(__file__)), "config", "verification.yml")


def _merge(base: dict, override: dict) -> dict:
    # shallow merge defaults（セクション単位）
    merged = copy.deepcopy(base)
    for k, v in (override or {}).items():
        if isinstance(v, dict) and isinstance(merged.get(k), dict):
            mv = dict(merged[k])
            mv.update(v)
            merged[k] = mv
        else:
            merged[k] = v
    return merged


def validate_config(cfg: dict) -> dict:
    th = cfg["thresholds"]
    if th["review"] > th["auto_approve"]:
        raise ConfigError(f"review threshold {th['review']} exceeds auto_approve {th['auto_approve']}")
    if th["min_margin"] < 0:
        raise ConfigError("min_margin must be >= 0")
    if th["low_score_policy"] not in ("manual_review", "reject"):
        raise ConfigError(f"unknown low_score_policy: {th['low_score_policy']}")
    if sum(cfg["weights"].values()) != 100:
        raise ConfigError(f"weights must sum to 100: {cfg['weights']}")
    try:
        lo, hi = Decimal(str(cfg["amount"]["min"])), Decimal(str(cfg["amount"]["max"]))
    except InvalidOperation as e:
        raise ConfigError(f"invalid amount range: {e}") from e
    if lo <= 0 or lo >= hi:
        raise ConfigError(f"invalid amount range: {lo}..{hi}")
    return cfg


def load_verification_config(path: str | None = None) -> dict:
    """設定を読み込む: DEFAULTS <- verification.yml <- 環境変数(.env含む)"""
    load_dotenv()
    path = path or os.getenv("VERIFICATION_CONFIG") or _default_path()
    try:
        with open(path, "r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}
    except FileNotFoundError:
        cfg = {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {path}: {e}") from e

    merged = _merge(DEFAULTS, cfg)
    for env_name, (section, key) in ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value:
            merged[section] = dict(merged[section])
            merged[section][key] = value
    return validate_config(merged)
