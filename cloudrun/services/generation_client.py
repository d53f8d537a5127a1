# cloudrun/services/generation_client.py

import asyncio
import logging
from typing import Optional

from google import genai
from google.genai import errors, types

from config import Config
from services.analysis_errors import (
    Unconfigured,
    UpstreamFailure,
    UpstreamRateLimited,
    UpstreamTimeout,
)
from services.secret_manager import resolve_credential

logger = logging.getLogger(__name__)

RATE_LIMIT_STATUSES = {"RESOURCE_EXHAUSTED"}


class GenerationClient:
    """
    Thin async wrapper around the Gemini API.

    Credentials are resolved on first use (API key from env or Secret
    Manager, or Vertex AI application default credentials), so the service
    can start without them and report Unconfigured per request.
    """

    def __init__(
        self,
        model: str = None,
        timeout_seconds: float = None,
        system_instruction: Optional[str] = None,
    ):
        self.model = model or Config.GEMINI_MODEL
        self.timeout_seconds = timeout_seconds or Config.GENERATION_TIMEOUT_SECONDS
        self.system_instruction = system_instruction
        self._genai_client = None

    async def get_genai_client(self) -> genai.Client:
        if not self._genai_client:
            if Config.GENAI_USE_VERTEXAI:
                self._genai_client = genai.Client(
                    vertexai=True,
                    project=Config.PROJECT_ID,
                    location=Config.GENAI_LOCATION,
                )
            else:
                # Secret Manager client is sync gRPC
                api_key = await asyncio.to_thread(
                    resolve_credential,
                    Config.GEMINI_API_KEY,
                    Config.GEMINI_API_KEY_SECRET_NAME,
                    Config.PROJECT_ID,
                )
                if not api_key:
                    logger.error("GEMINI_API_KEY not configured")
                    raise Unconfigured()
                self._genai_client = genai.Client(api_key=api_key)
        return self._genai_client

    async def generate(self, prompt: str, max_output_tokens: int = 1500) -> str:
        """Send one prompt and return the raw text of the first candidate."""
        client = await self.get_genai_client()
        config = types.GenerateContentConfig(
            system_instruction=self.system_instruction,
            temperature=Config.GENERATION_TEMPERATURE,
            max_output_tokens=max_output_tokens,
        )

        logger.info(f"Calling {self.model} (prompt={len(prompt)} chars)")
        try:
            response = await asyncio.wait_for(
                client.aio.models.generate_content(
                    model=self.model,
                    contents=prompt,
                    config=config,
                ),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.error(f"Gemini call timed out after {self.timeout_seconds}s")
            raise UpstreamTimeout()
        except errors.APIError as e:
            if e.code == 429 or e.status in RATE_LIMIT_STATUSES:
                logger.warning(f"Gemini rate limited: {e.code} {e.status}")
                raise UpstreamRateLimited()
            logger.error(f"Gemini API error: {e.code} {e.status} {e.message}")
            raise UpstreamFailure(f"AIサービスエラー ({e.code})")
        except Exception as e:
            logger.error(f"Gemini transport error: {e}")
            raise UpstreamFailure()

        text = response.text
        if not text or not text.strip():
            logger.error("Gemini returned an empty response")
            raise UpstreamFailure("AI要約を生成できませんでした")

        logger.info(f"Gemini response received ({len(text)} chars)")
        return text
