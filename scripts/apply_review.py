#!/usr/bin/env python
"""
手動レビューの決定を適用する
approve: 支払い義務を消し込み resolved に / reject: 却下して resolved に / reprocess: 再抽出
"""

import argparse
import os
import sys

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from config_loader import load_verification_config
from orchestrator import build_orchestrator
from verification_errors import ConcurrencyConflictError


def apply_review(submission_id: str, reviewer: str, action: str, obligation_id: str | None, note: str | None) -> int:
    print(f"🎯 決定適用処理: {submission_id} → {action}")
    orch = build_orchestrator(load_verification_config())

    if action == "reprocess":
        decision = orch.reprocess_submission(submission_id)
        print(f"🔁 再処理: {decision.kind.value if decision else 'queued'}")
        return 0

    try:
        decision = orch.review_submission(submission_id, reviewer, action, obligation_id=obligation_id, note=note)
    except ConcurrencyConflictError as e:
        print(f"❌ 支払い義務 {e.obligation_id} は既に消込済みです")
        return 2
    except (KeyError, ValueError) as e:
        print(f"⚠️ 適用できません: {e}")
        return 1

    print(f"🎉 決定適用完了: {decision.kind.value} (obligation={decision.obligation_id})")
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--submission-id", required=True)
    parser.add_argument("--reviewer", required=True, help="レビュー担当者ID")
    parser.add_argument("--action", required=True, choices=["approve", "reject", "reprocess"])
    parser.add_argument("--obligation-id", help="承認先の支払い義務ID（省略時は判定の1位候補）")
    parser.add_argument("--note", help="監査ログに残すメモ")
    args = parser.parse_args()

    sys.exit(apply_review(args.submission_id, args.reviewer, args.action, args.obligation_id, args.note))
