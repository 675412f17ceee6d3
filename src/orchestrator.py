"""
支払い証明の照合オーケストレータ
提出キューをワーカープールで処理し、抽出（OCR ∥ 構造化）→ 正規化 → 候補検索 → スコア → 判定 → 永続化 → イベント通知 を行う
"""

import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Dict, List, Optional, Tuple

from loguru import logger

import decision_engine
import field_normalizer
import matcher
from candidate_retriever import CandidateRetriever
from config_loader import load_verification_config
from execution_lock import ExecutionLock
from image_checks import ImageVault, content_hash, validate_image
from notifier import EventBus, SlackDecisionNotifier, VerificationDecided
from obligation_store import SqliteObligationStore
from payment_models import (
    DecisionKind,
    ExtractedPayment,
    PaymentProofSubmission,
    StructuredExtraction,
    SubmissionState,
    TextExtraction,
    VerificationDecision,
)
from rate_limiter import TokenBucket
from retry_policy import RetryPolicy, call_with_retry
from state_store import StateStore
from text_extractor import OcrServiceClient
from verification_errors import (
    ConcurrencyConflictError,
    ExtractionError,
    MalformedInputError,
    PersistenceError,
    RateLimitTimeout,
)
from vision_extractor import VisionPaymentExtractor


S = SubmissionState
IN_FLIGHT = (S.RECEIVED, S.EXTRACTING, S.SCORING)
REVIEWABLE = (S.MANUAL_REVIEW, S.REJECTED, S.NO_CANDIDATE)
MIME_TYPES = {"JPEG": "image/jpeg", "PNG": "image/png", "WEBP": "image/webp"}
# 抽出結果待ちの猶予（リミッタ待ちのタイムアウトが先に届くように）
RESULT_GRACE_SECONDS = 0.5


class VerificationOrchestrator:
    def __init__(
        self,
        store: StateStore,
        obligations,
        text_extractor,
        structured_extractor,
        cfg: Dict,
        events: Optional[EventBus] = None,
        vault: Optional[ImageVault] = None,
        text_limiter: Optional[TokenBucket] = None,
        structured_limiter: Optional[TokenBucket] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep=time.sleep,
    ):
        self.store = store
        self.obligations = obligations
        self.text_extractor = text_extractor
        self.structured_extractor = structured_extractor
        self.cfg = cfg
        self.events = events or EventBus()
        self.vault = vault or ImageVault(cfg["storage"]["upload_dir"])
        self.text_limiter = text_limiter or TokenBucket.from_config("text", cfg)
        self.structured_limiter = structured_limiter or TokenBucket.from_config("structured", cfg)
        self.retry_policy = retry_policy or RetryPolicy.from_config(cfg)
        self._sleep = sleep

        w = cfg["workers"]
        self.worker_count = int(w["count"])
        self.submission_timeout = float(w["submission_timeout"])
        self.requeue_base_delay = float(w["requeue_base_delay"])
        self.requeue_max_delay = float(w["requeue_max_delay"])

        self.retriever = CandidateRetriever(obligations, cfg)
        self.lock = ExecutionLock(store, timeout=int(w["lease_seconds"]))
        self._extract_pool = ThreadPoolExecutor(max_workers=2 * max(1, self.worker_count), thread_name_prefix="extract")

        self._queue: "queue.Queue[Optional[str]]" = queue.Queue()
        self._workers: List[threading.Thread] = []
        self._timers: List[threading.Timer] = []
        self._running = threading.Event()
        self._state_lock = threading.Lock()
        self._decided: Dict[str, threading.Event] = {}
        self._requeues: Dict[str, int] = {}

    # ---- exposed interface ----

    def submit_proof(self, submission_id: str, image_bytes: bytes, hinted_obligation_id: Optional[str] = None) -> PaymentProofSubmission:
        """提出を受け付ける。同一IDは冪等、同一画像ハッシュは元の提出の結果を共有する"""
        digest = content_hash(image_bytes)
        image_ref = self.vault.put(digest, image_bytes)
        sub, created = self.store.create_submission(
            PaymentProofSubmission(
                id=submission_id,
                image_ref=image_ref,
                content_hash=digest,
                hinted_obligation_id=hinted_obligation_id,
            )
        )
        if not created:
            logger.info("submission {sid} already accepted (state={state})", sid=submission_id, state=sub.state.value)
            return sub
        if sub.duplicate_of:
            logger.info("submission {sid} duplicates {orig}; sharing its outcome", sid=sub.id, orig=sub.duplicate_of)
            decision = self.store.get_current_decision(sub.duplicate_of)
            if decision:
                self.events.publish(self._event(sub.id, decision))
            return sub
        logger.info("submission {sid} accepted (hash={h})", sid=sub.id, h=digest[:12])
        if self._running.is_set():
            self._queue.put(sub.id)
        return sub

    def get_decision(self, submission_id: str) -> Optional[VerificationDecision]:
        """現在の判定。重複提出は元の提出の判定を返す"""
        return self.store.get_current_decision(self._root_id(submission_id))

    def wait_for_decision(self, submission_id: str, timeout: Optional[float] = None) -> Optional[VerificationDecision]:
        """判定が出るまで待つ。待機中に元提出がキャンセルされ昇格した場合は昇格先を待ち直す"""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            root = self._root_id(submission_id)
            signal = self._signal_for(root)
            decision = self.store.get_current_decision(root)
            if decision is not None:
                return decision
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            signal.wait(remaining)
            if self._root_id(submission_id) == root:
                return self.store.get_current_decision(root)
            if deadline is not None and time.monotonic() >= deadline:
                return None

    def cancel_submission(self, submission_id: str) -> bool:
        """キャンセル要求。処理中なら次の段階境界で破棄される"""
        state = self.store.request_cancel(submission_id)
        if state is None:
            raise KeyError(submission_id)
        if state == S.CANCELLED:
            logger.info("submission {sid} cancelled before processing", sid=submission_id)
            self._on_cancelled(submission_id)
            return True
        return state in (S.EXTRACTING, S.SCORING)

    def review_submission(
        self,
        submission_id: str,
        reviewer_id: str,
        action: str,
        obligation_id: Optional[str] = None,
        note: Optional[str] = None,
    ) -> VerificationDecision:
        """レビュー担当者の approve / reject。旧判定は superseded として履歴に残る"""
        sub = self._require(submission_id)
        if sub.duplicate_of:
            raise ValueError(f"{submission_id} is a duplicate; review {sub.duplicate_of} instead")
        if sub.state not in REVIEWABLE:
            raise ValueError(f"{submission_id} is not awaiting review (state={sub.state.value})")
        current = self.store.get_current_decision(submission_id)
        extra = [note] if note else []

        if action == "approve":
            target = obligation_id or (current.obligation_id if current else None)
            if not target:
                raise ValueError("obligation_id is required to approve")
            score = current.score if current and current.obligation_id == target else 0
            decision = VerificationDecision(
                submission_id=submission_id, kind=DecisionKind.APPROVED, obligation_id=target,
                score=score, reasons=[f"approved by {reviewer_id}"] + extra, decided_by=reviewer_id,
            )
            self.store.commit_review_approval(decision, self.obligations)
        elif action == "reject":
            decision = VerificationDecision(
                submission_id=submission_id, kind=DecisionKind.REJECTED, obligation_id=None,
                score=current.score if current else 0, reasons=[f"rejected by {reviewer_id}"] + extra,
                decided_by=reviewer_id,
            )
            self.store.commit_decision(decision, S.RESOLVED)
        else:
            raise ValueError(f"unknown review action: {action}")

        logger.info("review {action} on {sid} by {who}", action=action, sid=submission_id, who=reviewer_id)
        self._announce(decision)
        return decision

    def resolve_submission(self, submission_id: str, actor: str = "system") -> bool:
        """自動承認済みの提出を resolved にする"""
        return self.store.transition(submission_id, [S.AUTO_APPROVED], S.RESOLVED, actor=actor)

    def reprocess_submission(self, submission_id: str) -> Optional[VerificationDecision]:
        """再抽出して判定し直す（抽出結果は新バージョンとして保存）"""
        sub = self._require(submission_id)
        if sub.duplicate_of:
            raise ValueError(f"{submission_id} is a duplicate; reprocess {sub.duplicate_of} instead")
        if not self.store.transition(submission_id, REVIEWABLE, S.RECEIVED, reasons=["reprocess"]):
            raise ValueError(f"{submission_id} cannot be reprocessed (state={sub.state.value})")
        with self._state_lock:
            self._decided.pop(submission_id, None)
        if self._running.is_set():
            self._queue.put(submission_id)
            return None
        return self.process_submission(submission_id)

    def get_processing_stats(self) -> Dict:
        stats = self.store.get_processing_stats()
        stats["queue_depth"] = self._queue.qsize()
        stats["workers"] = len(self._workers)
        return stats

    # ---- worker pool ----

    def start(self):
        if self._running.is_set():
            return
        self._running.set()
        pending = self.store.list_unfinished()
        for sid in pending:
            self._queue.put(sid)
        if pending:
            logger.info("re-queued {n} unfinished submissions", n=len(pending))
        for i in range(self.worker_count):
            t = threading.Thread(target=self._worker, args=(f"worker-{i}",), name=f"verify-worker-{i}", daemon=True)
            t.start()
            self._workers.append(t)
        logger.info("verification workers started: {n}", n=self.worker_count)

    def stop(self, timeout: Optional[float] = None):
        self._running.clear()
        with self._state_lock:
            timers, self._timers = self._timers, []
        for timer in timers:
            timer.cancel()
        for _ in self._workers:
            self._queue.put(None)
        for t in self._workers:
            t.join(timeout)
        self._workers = []
        logger.info("verification workers stopped")

    def close(self):
        self.stop()
        self._extract_pool.shutdown(wait=True)

    def _worker(self, worker_id: str):
        while True:
            sid = self._queue.get()
            try:
                if sid is None:
                    return
                try:
                    self.process_submission(sid, worker_id)
                except PersistenceError as e:
                    logger.error("store unavailable while processing {sid}: {err}", sid=sid, err=e)
                    self._defer(sid, "persistence_error")
                except Exception as e:
                    logger.exception("unexpected failure processing {sid}", sid=sid)
                    self._fail_safe(sid, type(e).__name__)
            finally:
                self._queue.task_done()

    def _defer(self, submission_id: str, reason: str):
        """received に戻し、上限付き指数バックオフで再キューする"""
        try:
            self.store.transition(submission_id, [S.EXTRACTING, S.SCORING], S.RECEIVED, reasons=[reason])
        except PersistenceError as e:
            logger.error("could not reset {sid} to received: {err}", sid=submission_id, err=e)
        with self._state_lock:
            n = self._requeues.get(submission_id, 0) + 1
            self._requeues[submission_id] = n
        delay = min(self.requeue_base_delay * (2 ** (n - 1)), self.requeue_max_delay)
        logger.warning("deferring {sid} ({reason}) for {delay:.1f}s", sid=submission_id, reason=reason, delay=delay)
        if not self._running.is_set():
            return
        timer = threading.Timer(delay, self._requeue, args=(submission_id,))
        timer.daemon = True
        with self._state_lock:
            self._timers.append(timer)
        timer.start()

    def _requeue(self, submission_id: str):
        if self._running.is_set():
            self._queue.put(submission_id)

    def _fail_safe(self, submission_id: str, detail: str):
        """想定外の失敗でも提出を宙に浮かせず internal_error の手動レビューで終わらせる"""
        try:
            sub = self._require(submission_id)
            if sub.duplicate_of or sub.state not in IN_FLIGHT:
                return
            if sub.state == S.RECEIVED:
                self.store.transition(submission_id, [S.RECEIVED], S.EXTRACTING, reasons=["fail_safe"])
            self._commit(decision_engine.internal_error(submission_id, detail))
        except PersistenceError:
            self._defer(submission_id, "persistence_error")
        except Exception:
            logger.exception("fail-safe commit failed for {sid}", sid=submission_id)

    # ---- pipeline ----

    def process_submission(self, submission_id: str, worker_id: Optional[str] = None) -> Optional[VerificationDecision]:
        """1件をリースを取って最後まで処理する。判定を返す（キャンセル・延期・他ワーカー処理中は None）"""
        worker_id = worker_id or f"inline-{threading.get_ident()}"
        sub = self._require(submission_id)
        if sub.duplicate_of:
            if self._require(sub.duplicate_of).state != S.CANCELLED:
                return self.get_decision(submission_id)
            # 元提出がキャンセルされたまま残った重複（再起動時など）
            self.store.promote_alias(sub.duplicate_of)
            sub = self._require(submission_id)
            if sub.duplicate_of:
                return self.get_decision(submission_id)
        if sub.state not in IN_FLIGHT:
            return self.store.get_current_decision(submission_id)

        with self.lock.hold(submission_id, worker_id) as acquired:
            if not acquired:
                logger.info("{sid} is leased by another worker", sid=submission_id)
                return None
            sub = self._require(submission_id)
            if sub.state in (S.EXTRACTING, S.SCORING):
                # 前回のワーカーが途中で落ちた
                self.store.transition(submission_id, [sub.state], S.RECEIVED, reasons=["lease_recovered"])
            elif sub.state != S.RECEIVED:
                return self.store.get_current_decision(submission_id)
            return self._run(sub)

    def _run(self, sub: PaymentProofSubmission) -> Optional[VerificationDecision]:
        sid = sub.id
        self.store.bump_attempts(sid)
        if self._cancel_point(sid, "received"):
            return None
        if not self.store.transition(sid, [S.RECEIVED], S.EXTRACTING):
            return None

        try:
            text, structured, notes = self._extract(sub)
        except MalformedInputError as e:
            logger.warning("unreadable image for {sid}: {err}", sid=sid, err=e)
            return self._commit(decision_engine.unreadable(sid, str(e)))
        except RateLimitTimeout as e:
            self._defer(sid, f"rate_limited:{e.bucket}")
            return None

        if self._cancel_point(sid, "extracting"):
            return None

        try:
            extracted = field_normalizer.normalize(
                sid, text, structured, self.cfg, version=self.store.next_extraction_version(sid), notes=notes,
            )
            self.store.save_extraction(extracted)
            if not self.store.transition(sid, [S.EXTRACTING], S.SCORING):
                return None
            decision = self._score_and_decide(extracted, sub.hinted_obligation_id)
        except PersistenceError:
            raise
        except Exception as e:
            logger.exception("scoring failed for {sid}", sid=sid)
            decision = decision_engine.internal_error(sid, type(e).__name__)

        if self._cancel_point(sid, "scoring"):
            return None
        return self._commit(decision)

    def _extract(self, sub: PaymentProofSubmission) -> Tuple[Optional[TextExtraction], Optional[StructuredExtraction], List[str]]:
        """OCRと構造化抽出を並行実行する。片方の失敗は notes に残して続行"""
        image = self.vault.get(sub.image_ref)
        fmt = validate_image(image, int(self.cfg["extraction"]["max_image_bytes"]))
        hints = self._hints(sub)
        deadline = time.monotonic() + self.submission_timeout

        futures = {
            "text": self._extract_pool.submit(
                self._call_extractor, "text", self.text_limiter,
                lambda: self.text_extractor.extract_text(image), deadline,
            ),
            "structured": self._extract_pool.submit(
                self._call_extractor, "structured", self.structured_limiter,
                lambda: self.structured_extractor.extract_payment(image, hints=hints, mime=MIME_TYPES[fmt]), deadline,
            ),
        }
        results = {}
        notes: List[str] = []
        terminal = None
        for name, future in futures.items():
            try:
                results[name] = future.result(timeout=max(0.0, deadline - time.monotonic()) + RESULT_GRACE_SECONDS)
            except FutureTimeout:
                future.cancel()
                logger.warning(
                    "{name} extractor for {sid} exceeded {timeout:.0f}s; continuing without it",
                    name=name, sid=sub.id, timeout=self.submission_timeout,
                )
                notes.append(f"{name}_extractor_failed")
            except (MalformedInputError, RateLimitTimeout) as e:
                terminal = terminal or e
            except ExtractionError as e:
                logger.warning("{name} extractor failed for {sid}: {err}", name=name, sid=sub.id, err=e)
                notes.append(f"{name}_extractor_failed")
            except Exception:
                logger.exception("{name} extractor crashed for {sid}", name=name, sid=sub.id)
                notes.append(f"{name}_extractor_failed")
        if terminal is not None:
            raise terminal
        logger.info("extraction done for {sid} (degraded={notes})", sid=sub.id, notes=notes or None)
        return results.get("text"), results.get("structured"), notes

    def _call_extractor(self, name: str, limiter: TokenBucket, fn, deadline: float):
        def attempt():
            limiter.acquire(timeout=max(0.0, deadline - time.monotonic()))
            return fn()

        return call_with_retry(attempt, self.retry_policy, (ExtractionError,), sleep=self._sleep, label=f"{name} extractor")

    def _hints(self, sub: PaymentProofSubmission) -> Optional[Dict]:
        if not sub.hinted_obligation_id:
            return None
        ob = self.obligations.get(sub.hinted_obligation_id)
        if ob is None:
            return None
        return {"amount": str(ob.amount), "currency": ob.currency.value, "reference": ob.reference}

    def _score_and_decide(self, extracted: ExtractedPayment, hinted_obligation_id: Optional[str]) -> VerificationDecision:
        pre = decision_engine.precheck(extracted)
        if pre is not None:
            return pre
        obligations = self.retriever.find_candidates(extracted, hinted_obligation_id)
        ranked = matcher.rank_candidates(extracted, obligations, self.cfg)
        return decision_engine.decide(extracted, ranked, self.cfg)

    def _cancel_point(self, submission_id: str, stage: str) -> bool:
        if not self.store.is_cancel_requested(submission_id):
            return False
        self.store.transition(submission_id, IN_FLIGHT, S.CANCELLED, reasons=[f"cancelled during {stage}"])
        logger.info("submission {sid} cancelled during {stage}; result discarded", sid=submission_id, stage=stage)
        self._on_cancelled(submission_id)
        return True

    def _commit(self, decision: VerificationDecision) -> Optional[VerificationDecision]:
        sid = decision.submission_id
        current = self._require(sid).state
        target = decision_engine.KIND_TO_STATE[decision.kind]
        if not decision_engine.can_transition(current, target):
            raise RuntimeError(f"illegal transition {current.value} -> {target.value} for {sid}")

        if decision.kind == DecisionKind.AUTO_APPROVED:
            try:
                committed = self.store.commit_auto_approval(decision, self.obligations)
            except ConcurrencyConflictError as e:
                logger.warning("{sid}: obligation {oid} already settled; downgrading", sid=sid, oid=e.obligation_id)
                decision = decision_engine.downgrade(decision)
                committed = self.store.commit_decision(decision, S.MANUAL_REVIEW)
        else:
            committed = self.store.commit_decision(decision, target)

        if not committed:
            logger.info("submission {sid} cancelled before commit; decision discarded", sid=sid)
            self._on_cancelled(sid)
            return None
        with self._state_lock:
            self._requeues.pop(sid, None)
        logger.info(
            "decision for {sid}: {kind} (obligation={oid}, score={score})",
            sid=sid, kind=decision.kind.value, oid=decision.obligation_id, score=decision.score,
        )
        self._announce(decision)
        return decision

    # ---- helpers ----

    def _require(self, submission_id: str) -> PaymentProofSubmission:
        sub = self.store.get_submission(submission_id)
        if sub is None:
            raise KeyError(submission_id)
        return sub

    def _root_id(self, submission_id: str) -> str:
        sub = self._require(submission_id)
        return sub.duplicate_of or sub.id

    def _on_cancelled(self, submission_id: str):
        """キャンセルで宙に浮く重複を昇格して処理に回し、待機者を起こす"""
        promoted = self.store.promote_alias(submission_id)
        if promoted:
            logger.info("duplicate {alias} promoted after {sid} was cancelled", alias=promoted, sid=submission_id)
            if self._running.is_set():
                self._queue.put(promoted)
        self._signal_for(submission_id).set()

    def _signal_for(self, submission_id: str) -> threading.Event:
        with self._state_lock:
            return self._decided.setdefault(submission_id, threading.Event())

    def _event(self, submission_id: str, decision: VerificationDecision) -> VerificationDecided:
        return VerificationDecided(
            submission_id=submission_id,
            outcome=decision.kind.value,
            obligation_id=decision.obligation_id,
            score=decision.score,
            reasons=list(decision.reasons),
        )

    def _announce(self, decision: VerificationDecision):
        sid = decision.submission_id
        self._signal_for(sid).set()
        self.events.publish(self._event(sid, decision))
        for alias in self.store.list_aliases(sid):
            self.events.publish(self._event(alias, decision))


def build_orchestrator(cfg: Optional[Dict] = None) -> VerificationOrchestrator:
    """プロセス起動時に1度だけ依存を組み立てる"""
    cfg = cfg or load_verification_config()
    store = StateStore(cfg["storage"]["db_path"])
    store.init_db()
    events = EventBus()
    events.subscribe(SlackDecisionNotifier(cfg["services"].get("slack_webhook_url")))
    return VerificationOrchestrator(
        store,
        SqliteObligationStore(store),
        OcrServiceClient.from_config(cfg),
        VisionPaymentExtractor.from_config(cfg),
        cfg,
        events=events,
        vault=ImageVault(cfg["storage"]["upload_dir"]),
    )
