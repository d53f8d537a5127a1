# cloudrun/config.py

import os
from typing import List


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == 'true'


class Config:
    """Application configuration for the AI analysis service."""

    # GCP project (Firestore, Secret Manager, Vertex AI)
    PROJECT_ID = os.getenv('PROJECT_ID') or os.getenv('GOOGLE_CLOUD_PROJECT')

    # Firebase project used as the ID token audience
    FIREBASE_PROJECT_ID = os.getenv('FIREBASE_PROJECT_ID') or PROJECT_ID

    # Gemini credentials: direct key, Secret Manager secret, or Vertex AI
    GEMINI_API_KEY = os.getenv('GEMINI_API_KEY')
    GEMINI_API_KEY_SECRET_NAME = os.getenv('GEMINI_API_KEY_SECRET_NAME')
    GENAI_USE_VERTEXAI = _env_bool('GENAI_USE_VERTEXAI', 'false')
    GENAI_LOCATION = os.getenv('GENAI_LOCATION', 'us-central1')

    GEMINI_MODEL = os.getenv('GEMINI_MODEL', 'gemini-2.5-flash-lite')
    GENERATION_TEMPERATURE = float(os.getenv('GENERATION_TEMPERATURE', '0.7'))
    GENERATION_TIMEOUT_SECONDS = float(os.getenv('GENERATION_TIMEOUT_SECONDS', '60'))
    SUMMARY_MAX_OUTPUT_TOKENS = int(os.getenv('SUMMARY_MAX_OUTPUT_TOKENS', '1500'))
    IMPROVEMENT_MAX_OUTPUT_TOKENS = int(os.getenv('IMPROVEMENT_MAX_OUTPUT_TOKENS', '4096'))

    # Cache tiers
    CACHE_TTL_DAYS = int(os.getenv('CACHE_TTL_DAYS', '7'))
    LEGACY_RETENTION_DAYS = int(os.getenv('LEGACY_RETENTION_DAYS', '30'))
    LEGACY_CACHE_ENABLED = _env_bool('LEGACY_CACHE_ENABLED', 'true')

    # Monthly usage periods roll over in this timezone
    USAGE_TIMEZONE = os.getenv('USAGE_TIMEZONE', 'Asia/Tokyo')

    # HTTP surface
    ANALYSIS_RATE_LIMIT = os.getenv('ANALYSIS_RATE_LIMIT', '10/minute')
    ADMIN_API_KEY = os.getenv('ADMIN_API_KEY')
    ADMIN_API_KEY_SECRET_NAME = os.getenv('ADMIN_API_KEY_SECRET_NAME')
    ALLOWED_ORIGINS = os.getenv('ALLOWED_ORIGINS', 'http://localhost:3000')
    MAX_METRICS_BYTES = int(os.getenv('MAX_METRICS_BYTES', '200000'))

    @classmethod
    def allowed_origins(cls) -> List[str]:
        """CORS origins from a comma separated list."""
        return [origin.strip() for origin in cls.ALLOWED_ORIGINS.split(',') if origin.strip()]

    @classmethod
    def max_output_tokens(cls, usage_category: str) -> int:
        if usage_category == 'improvement':
            return cls.IMPROVEMENT_MAX_OUTPUT_TOKENS
        return cls.SUMMARY_MAX_OUTPUT_TOKENS

    @classmethod
    def has_genai_credentials(cls) -> bool:
        """Check whether any Gemini credential source is configured."""
        return bool(cls.GEMINI_API_KEY or cls.GEMINI_API_KEY_SECRET_NAME or cls.GENAI_USE_VERTEXAI)
