# cloudrun/services/input_validator.py

import json
import re
from datetime import date
from typing import Any, Dict

from config import Config
from services.analysis_errors import InvalidArgument
from services.models import AnalysisRequest


class InputValidator:
    """
    Validates analysis requests before anything touches the cache, the
    ledger or the model.
    """

    REQUIRED_FIELDS = ("siteId", "pageType", "startDate", "endDate", "metrics")

    DATE_PATTERN = re.compile(r'^\d{4}-\d{2}-\d{2}$')

    MAX_ID_LENGTH = 128
    MAX_PAGE_TYPE_LENGTH = 64

    @classmethod
    def validate_analysis_request(cls, request: AnalysisRequest) -> AnalysisRequest:
        """
        Check required fields, date format/order and payload size.

        Unknown page types are accepted; they get the generic template.

        Raises:
            InvalidArgument
        """
        missing = [name for name in cls.REQUIRED_FIELDS if cls._is_missing(getattr(request, name))]
        if missing:
            raise InvalidArgument(f"{', '.join(cls.REQUIRED_FIELDS)} are required (missing: {', '.join(missing)})")

        if len(request.siteId) > cls.MAX_ID_LENGTH or '/' in request.siteId:
            raise InvalidArgument("Invalid siteId")

        if len(request.pageType) > cls.MAX_PAGE_TYPE_LENGTH:
            raise InvalidArgument("Invalid pageType")

        start = cls._parse_date(request.startDate, "startDate")
        end = cls._parse_date(request.endDate, "endDate")
        if start > end:
            raise InvalidArgument("startDate must not be after endDate")

        cls._check_metrics_size(request.metrics)

        return AnalysisRequest(
            siteId=request.siteId.strip(),
            pageType=request.pageType.strip(),
            startDate=request.startDate,
            endDate=request.endDate,
            metrics=request.metrics,
            forceRegenerate=request.forceRegenerate,
        )

    @staticmethod
    def _is_missing(value: Any) -> bool:
        if value is None:
            return True
        return isinstance(value, str) and not value.strip()

    @classmethod
    def _parse_date(cls, value: str, field: str) -> date:
        if not cls.DATE_PATTERN.match(value):
            raise InvalidArgument(f"{field} must be YYYY-MM-DD")
        try:
            return date.fromisoformat(value)
        except ValueError:
            raise InvalidArgument(f"{field} is not a valid date")

    @staticmethod
    def _check_metrics_size(metrics: Dict[str, Any]) -> None:
        try:
            size = len(json.dumps(metrics, ensure_ascii=False, default=str).encode("utf-8"))
        except (TypeError, ValueError):
            raise InvalidArgument("metrics must be JSON serialisable")
        if size > Config.MAX_METRICS_BYTES:
            raise InvalidArgument(f"metrics too large. Max {Config.MAX_METRICS_BYTES} bytes.")
