# cloudrun/services/output_validator.py

import logging
import re
from typing import Tuple

logger = logging.getLogger(__name__)


class OutputValidator:
    """
    Validate and clean raw model output before extraction.
    Runs once per generation; the cleaned text feeds both the extractor and
    the deduplicator.
    """

    # Prompt section headings that should never appear in an answer
    LEAKED_PROMPT_PATTERNS = [
        r'【要求事項】',
        r'【データ使用の厳守事項】',
        r'【厳守事項】',
        r'【出力手順】',
        r'【改善施策ナレッジ】',
    ]

    MAX_RESPONSE_LENGTH = 20000  # characters

    # ```markdown ... ``` wrapping the whole answer
    CODE_FENCE_PATTERN = re.compile(r'^\s*```[a-zA-Z]*\s*\n(.*?)\n\s*```\s*$', re.DOTALL)

    @classmethod
    def validate_model_output(cls, text: str) -> Tuple[bool, str]:
        """
        Returns:
            (is_valid, reason)
        """
        for pattern in cls.LEAKED_PROMPT_PATTERNS:
            if re.search(pattern, text):
                return False, "Response echoed prompt instructions"

        if len(text) > cls.MAX_RESPONSE_LENGTH:
            return False, "Response too long"

        return True, ""

    @classmethod
    def sanitize_model_output(cls, text: str) -> str:
        """Unwrap code fences, normalise newlines, trim and cap length."""
        text = text.replace('\r\n', '\n').replace('\r', '\n')

        fenced = cls.CODE_FENCE_PATTERN.match(text)
        if fenced:
            text = fenced.group(1)

        is_valid, reason = cls.validate_model_output(text)
        if not is_valid:
            logger.warning(f"Model output validation: {reason} (length={len(text)})")

        return text.strip()[:cls.MAX_RESPONSE_LENGTH]
