# cloudrun/services/analysis_errors.py

from fastapi import HTTPException


class AnalysisError(HTTPException):
    """
    Base class for errors surfaced to callers of the analysis endpoint.

    Each subclass carries a fixed HTTP status and a category code that the
    frontend switches on. The message is always caller-safe.
    """

    status_code = 500
    code = "internal"
    default_message = "AI分析の生成に失敗しました"

    def __init__(self, message: str = None):
        super().__init__(
            status_code=type(self).status_code,
            detail=message or type(self).default_message,
        )


class Unauthenticated(AnalysisError):
    status_code = 401
    code = "unauthenticated"
    default_message = "ユーザー認証が必要です"


class InvalidArgument(AnalysisError):
    status_code = 400
    code = "invalid-argument"
    default_message = "siteId, pageType, startDate, endDate, metrics are required"


class QuotaExceeded(AnalysisError):
    status_code = 429
    code = "resource-exhausted"
    default_message = "今月のAI生成回数の上限に達しました"


class Unconfigured(AnalysisError):
    status_code = 503
    code = "failed-precondition"
    default_message = "Gemini API key is not configured"


class UpstreamRateLimited(AnalysisError):
    # Same category as QuotaExceeded for the caller, different advice.
    status_code = 429
    code = "resource-exhausted"
    default_message = "AIサービスが混み合っています。数分後に再度お試しください"


class UpstreamFailure(AnalysisError):
    status_code = 502
    code = "unavailable"
    default_message = "AIサービスからの応答を取得できませんでした"
    retryable = False


class UpstreamTimeout(UpstreamFailure):
    status_code = 504
    default_message = "AIサービスの応答がタイムアウトしました。再度お試しください"
    retryable = True


class InternalError(AnalysisError):
    pass
