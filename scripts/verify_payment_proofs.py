#!/usr/bin/env python
"""
支払い証明の照合 CLI
画像を提出して判定を表示する / 判定の照会 / 支払い義務の取り込み / 統計 / ワーカー常駐
"""

import argparse
import json
import os
import sys
import time
import uuid
from decimal import Decimal

import yaml

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from config_loader import load_verification_config
from orchestrator import build_orchestrator
from payment_models import Currency, ObligationStatus, PendingObligation


def _print_decision(decision):
    if decision is None:
        print("⏳ 判定なし（処理中・キャンセル・延期）")
        return
    print(f"📋 {decision.submission_id}: {decision.kind.value} (score={decision.score}, obligation={decision.obligation_id})")
    for r in decision.reasons:
        print(f"   - {r}")
    for c in decision.candidates[:5]:
        print(f"   候補 {c['obligation_id']}: {c['score']}")


def cmd_submit(orch, args):
    with open(args.image, "rb") as f:
        image = f.read()
    sid = args.submission_id or f"sub_{uuid.uuid4().hex[:12]}"
    sub = orch.submit_proof(sid, image, hinted_obligation_id=args.hint)
    print(f"📤 受付: {sub.id} (duplicate_of={sub.duplicate_of})")
    _print_decision(orch.process_submission(sub.id))


def cmd_decision(orch, args):
    _print_decision(orch.get_decision(args.submission_id))


def cmd_stats(orch, args):
    print(json.dumps(orch.get_processing_stats(), ensure_ascii=False, indent=2))


def cmd_import_obligations(orch, args):
    with open(args.file, "r", encoding="utf-8") as f:
        rows = yaml.safe_load(f) or []
    for row in rows:
        orch.obligations.upsert(
            PendingObligation(
                id=str(row["id"]),
                order_id=str(row.get("order_id", row["id"])),
                buyer_id=str(row.get("buyer_id", "")),
                buyer_name=row.get("buyer_name"),
                amount=Decimal(str(row["amount"])),
                currency=Currency(row["currency"]),
                reference=row.get("reference"),
                deadline=row.get("deadline"),
                status=ObligationStatus(row.get("status", "awaiting_payment")),
            )
        )
    print(f"✅ 支払い義務 {len(rows)} 件を取り込みました")


def cmd_run(orch, args):
    orch.start()
    print("🚀 ワーカー起動（Ctrl+Cで停止）")
    try:
        while True:
            time.sleep(args.interval)
    except KeyboardInterrupt:
        pass
    finally:
        orch.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--config", help="verification.yml のパス")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("submit", help="画像を提出して判定する")
    p.add_argument("--image", required=True)
    p.add_argument("--submission-id")
    p.add_argument("--hint", help="想定される支払い義務ID")
    p.set_defaults(func=cmd_submit)

    p = sub.add_parser("decision", help="現在の判定を表示")
    p.add_argument("--submission-id", required=True)
    p.set_defaults(func=cmd_decision)

    p = sub.add_parser("stats", help="処理統計")
    p.set_defaults(func=cmd_stats)

    p = sub.add_parser("import-obligations", help="YAML/JSONの支払い義務一覧を取り込む")
    p.add_argument("--file", required=True)
    p.set_defaults(func=cmd_import_obligations)

    p = sub.add_parser("run", help="キューのワーカーを常駐させる")
    p.add_argument("--interval", type=float, default=5.0)
    p.set_defaults(func=cmd_run)

    args = parser.parse_args()
    orch = build_orchestrator(load_verification_config(args.config))
    args.func(orch, args)
