import threading
from dataclasses import dataclass, field, asdict
from typing import Callable, Dict, List, Optional

import requests
from loguru import logger


@dataclass
class VerificationDecided:
    submission_id: str
    outcome: str
    obligation_id: Optional[str]
    score: int
    reasons: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return asdict(self)


Handler = Callable[[VerificationDecided], None]


class EventBus:
    """判定イベントの配信。購読者の失敗はログに残し、パイプラインには伝播させない"""

    def __init__(self):
        self._handlers: List[Handler] = []
        self._lock = threading.Lock()

    def subscribe(self, handler: Handler):
        with self._lock:
            self._handlers.append(handler)

    def publish(self, event: VerificationDecided):
        with self._lock:
            handlers = list(self._handlers)
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "event handler {name} failed for {sid}",
                    name=getattr(handler, "__name__", type(handler).__name__), sid=event.submission_id,
                )


OUTCOME_LABELS = {
    "auto_approved": ":white_check_mark: 自動承認",
    "approved": ":white_check_mark: 承認（レビュー）",
    "manual_review": ":eyes: 要確認",
    "rejected": ":x: 却下",
    "no_candidate": ":grey_question: 該当なし",
}


class SlackDecisionNotifier:
    """Incoming Webhook へ判定結果を投稿する購読者"""

    def __init__(self, webhook_url: Optional[str], notify_outcomes: Optional[set] = None, timeout: float = 10):
        self.webhook_url = webhook_url
        self.notify_outcomes = notify_outcomes or set(OUTCOME_LABELS)
        self.timeout = timeout

    def build_payload(self, event: VerificationDecided) -> Dict:
        label = OUTCOME_LABELS.get(event.outcome, event.outcome)
        lines = [f"{label}  submission `{event.submission_id}`  score {event.score}"]
        if event.obligation_id:
            lines.append(f"obligation: `{event.obligation_id}`")
        if event.reasons:
            lines.append("理由: " + " / ".join(event.reasons[:5]))
        return {"text": "\n".join(lines)}

    def __call__(self, event: VerificationDecided):
        if event.outcome not in self.notify_outcomes:
            return
        if not self.webhook_url:
            logger.warning("SLACK_WEBHOOK_URL未設定 - 通知スキップ ({sid})", sid=event.submission_id)
            return
        resp = requests.post(self.webhook_url, json=self.build_payload(event), timeout=self.timeout)
        resp.raise_for_status()
