import asyncio
import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from fastapi.testclient import TestClient
import sys
import os

# Add parent directory to path so we can import app
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import main
from main import app, get_analysis_service
from services.analysis_errors import QuotaExceeded, UpstreamTimeout
from services.auth import get_current_user
from services.models import AnalysisResult, RecommendationRecord
from services.rate_limiter import limiter

client = TestClient(app)

VALID_BODY = {
    "siteId": "site-1",
    "pageType": "summary",
    "startDate": "2026-09-01",
    "endDate": "2026-09-30",
    "metrics": {"sessions": 1000, "conversions": 10},
}


@pytest.fixture
def mock_service():
    service = MagicMock()
    service.generate = AsyncMock(return_value=AnalysisResult(
        summary="## 概要\n好調です。",
        recommendations=[
            RecommendationRecord(title="CTA改善", description="ボタンを上部へ", category="design",
                                 priority="high", expected_impact="CVR +0.3pt"),
        ],
        fromCache=False,
        generatedAt="2026-10-01T00:00:00+00:00",
    ))
    service.get_usage = AsyncMock(return_value={"summary": {"used": 1, "limit": 10, "remaining": 9, "period": "2026-10"}})
    service.cleanup_legacy_cache = AsyncMock(return_value=7)

    app.dependency_overrides[get_current_user] = lambda: "user-1"
    app.dependency_overrides[get_analysis_service] = lambda: service
    limiter.reset()
    yield service
    app.dependency_overrides.clear()


def test_health_check():
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.headers["X-Content-Type-Options"] == "nosniff"


def test_generate_analysis(mock_service):
    response = client.post("/api/ai/analysis", json=VALID_BODY)

    assert response.status_code == 200
    data = response.json()
    assert data["summary"] == "## 概要\n好調です。"
    assert data["fromCache"] is False
    assert data["recommendations"][0]["expectedImpact"] == "CVR +0.3pt"

    user_id, request = mock_service.generate.call_args.args
    assert user_id == "user-1"
    assert request.siteId == "site-1"
    assert request.forceRegenerate is False


def test_missing_fields_are_invalid_argument(mock_service):
    response = client.post("/api/ai/analysis", json={"siteId": "site-1"})

    assert response.status_code == 400
    assert response.json()["code"] == "invalid-argument"
    mock_service.generate.assert_not_called()


def test_reversed_date_range_is_invalid_argument(mock_service):
    body = dict(VALID_BODY, startDate="2026-10-01", endDate="2026-09-01")
    response = client.post("/api/ai/analysis", json=body)

    assert response.status_code == 400
    assert response.json()["code"] == "invalid-argument"


def test_malformed_body_is_invalid_argument(mock_service):
    body = dict(VALID_BODY, metrics=["not", "an", "object"])
    response = client.post("/api/ai/analysis", json=body)

    assert response.status_code == 400
    assert response.json()["code"] == "invalid-argument"


def test_missing_token_is_unauthenticated(mock_service):
    del app.dependency_overrides[get_current_user]

    response = client.post("/api/ai/analysis", json=VALID_BODY)

    assert response.status_code == 401
    assert response.json()["code"] == "unauthenticated"
    mock_service.generate.assert_not_called()


def test_quota_exceeded(mock_service):
    mock_service.generate.side_effect = QuotaExceeded()

    response = client.post("/api/ai/analysis", json=VALID_BODY)

    assert response.status_code == 429
    assert response.json() == {"detail": QuotaExceeded.default_message, "code": "resource-exhausted"}


def test_upstream_timeout(mock_service):
    mock_service.generate.side_effect = UpstreamTimeout()

    response = client.post("/api/ai/analysis", json=VALID_BODY)

    assert response.status_code == 504
    assert response.json()["code"] == "unavailable"


def test_get_usage(mock_service):
    response = client.get("/api/ai/usage")

    assert response.status_code == 200
    data = response.json()
    assert data["userId"] == "user-1"
    assert data["usage"]["summary"]["remaining"] == 9


def test_admin_cleanup_requires_key(mock_service):
    with patch("main._admin_api_key", new=AsyncMock(return_value="admin-secret")):
        missing = client.post("/api/admin/cleanup-cache")
        wrong = client.post("/api/admin/cleanup-cache", headers={"Authorization": "Bearer nope"})
        ok = client.post("/api/admin/cleanup-cache", headers={"Authorization": "Bearer admin-secret"})

    assert missing.status_code == 401
    assert wrong.status_code == 403
    assert ok.status_code == 200
    assert ok.json()["deleted"] == 7
    mock_service.cleanup_legacy_cache.assert_awaited_once()


def test_admin_cleanup_disabled_without_key(mock_service):
    with patch("main._admin_api_key", new=AsyncMock(return_value=None)):
        response = client.post("/api/admin/cleanup-cache", headers={"Authorization": "Bearer anything"})

    assert response.status_code == 503
    mock_service.cleanup_legacy_cache.assert_not_called()


def test_missing_admin_key_is_not_cached():
    """An unset admin key is looked up again once it is configured."""
    main._admin_key_cache.clear()
    resolve = MagicMock(side_effect=[None, "admin-secret"])

    with patch("main.resolve_credential", resolve):
        first = asyncio.run(main._admin_api_key())
        second = asyncio.run(main._admin_api_key())
        third = asyncio.run(main._admin_api_key())

    main._admin_key_cache.clear()
    assert first is None
    assert second == "admin-secret"
    assert third == "admin-secret"
    assert resolve.call_count == 2
