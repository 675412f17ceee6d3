"""照合パイプラインのエラー分類"""

from typing import Optional


class VerificationError(Exception):
    """照合エンジン共通の基底例外"""


class ExtractionError(VerificationError):
    """抽出サービスに到達できない・タイムアウト・異常応答"""

    def __init__(self, message: str, extractor: str = "", retryable: bool = True, status_code: Optional[int] = None):
        super().__init__(message)
        self.extractor = extractor
        self.retryable = retryable
        self.status_code = status_code


class MalformedInputError(VerificationError):
    """画像が読めない（破損・非対応形式・サイズ超過）"""


class AmbiguousMatchError(VerificationError):
    """上位候補のスコア差が小さすぎる"""


class NoCandidateError(VerificationError):
    """候補なし（正常な終端状態）"""


class ConcurrencyConflictError(VerificationError):
    """対象の支払い義務が別の提出で既に消し込まれている"""

    def __init__(self, obligation_id: str, message: str = "target already settled"):
        super().__init__(message)
        self.obligation_id = obligation_id


class PersistenceError(VerificationError):
    """ストアが利用できない（再キュー対象）"""


class RateLimitTimeout(VerificationError):
    """レートリミッタの待機が提出単位のタイムアウトを超えた"""

    def __init__(self, bucket: str, waited: float):
        super().__init__(f"rate limit wait exceeded for {bucket} ({waited:.1f}s)")
        self.bucket = bucket
        self.waited = waited


class ConfigError(VerificationError):
    """設定値の不整合"""
