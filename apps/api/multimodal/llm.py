import json
import logging
from typing import Any, Dict, Optional

import openai
from openai import OpenAI

from config import settings, require_openai_api_key
from services.captions import resolve_call_to_action, resolve_platform_configs
from services.errors import (
    PipelineError,
    RateLimitError,
    RemoteRejectionError,
    RemoteTransientError,
    ValidationError,
    classify_http_failure,
)
from .models import CaptionSettingsModel

logger = logging.getLogger(__name__)

SERVICE_NAME = "OpenAI"


def get_openai_client(api_key: Optional[str] = None) -> OpenAI:
    """Get OpenAI client; raises a non-retryable error when no key is configured."""
    try:
        key = api_key or require_openai_api_key()
    except ValueError as exc:
        raise RemoteRejectionError(str(exc), service=SERVICE_NAME) from exc
    return OpenAI(api_key=key, timeout=120.0, max_retries=0)


def classify_openai_error(exc: Exception) -> PipelineError:
    """Map OpenAI SDK exceptions onto the pipeline error taxonomy."""
    if isinstance(exc, openai.RateLimitError):
        return RateLimitError(SERVICE_NAME)
    if isinstance(exc, (openai.APIConnectionError, openai.APITimeoutError)):
        return RemoteTransientError(f"{SERVICE_NAME} connection error: {exc}", service=SERVICE_NAME)
    if isinstance(exc, openai.APIStatusError):
        return classify_http_failure(SERVICE_NAME, exc.status_code, exc.message)
    return RemoteRejectionError(f"{SERVICE_NAME} error: {exc}", service=SERVICE_NAME)


def build_system_prompt(caption_settings: Optional[CaptionSettingsModel] = None) -> str:
    caption_settings = caption_settings or CaptionSettingsModel()
    configs = resolve_platform_configs(caption_settings)
    tone = caption_settings.custom_tone if caption_settings.tone == "custom" else caption_settings.tone
    cta = resolve_call_to_action(caption_settings)

    platform_lines = "\n".join(
        f"- {platform.capitalize()} (max {config.max_length} chars): {config.style}, "
        f"up to {config.hashtag_count} hashtags"
        for platform, config in configs.items()
    )
    shape = {
        platform: {"caption": "...", "hashtags": ["#relevant", "#hashtags"], "char_count": 0}
        for platform in configs
    }
    return f"""{caption_settings.system_prompt}

TONE: {tone or 'casual'}
CALL-TO-ACTION: {cta}

PLATFORM SPECIFICATIONS:
{platform_lines}

OPTIMIZATION RULES:
1. Always preserve the core message and call-to-action
2. Adapt tone and length to platform expectations
3. Use strategic hashtags relevant to each platform's culture
4. Ensure each version stays within character limits

Return ONLY a JSON object with this exact structure:
{json.dumps(shape, indent=2)}"""


def generate_captions(
    transcript: str,
    title: str,
    caption_settings: Optional[CaptionSettingsModel] = None,
    api_key: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Ask the caption model for per-platform captions.

    Returns the raw parsed JSON; limits are enforced by the caller.
    """
    client = get_openai_client(api_key)

    # Keep prompt size bounded
    if len(transcript) > 12000:
        transcript = transcript[:12000] + "...(truncated)"

    try:
        completion = client.chat.completions.create(
            model=settings.CAPTION_MODEL,
            messages=[
                {"role": "system", "content": build_system_prompt(caption_settings)},
                {
                    "role": "user",
                    "content": (
                        f"Video Title: {title}\n\nVideo Transcript:\n{transcript}\n\n"
                        "Generate platform-optimized captions. Each version should stay within its "
                        "character limit, match the platform's culture, keep the core message and "
                        "call-to-action, and encourage engagement."
                    ),
                },
            ],
            response_format={"type": "json_object"},
            max_tokens=1500,
            temperature=0.7,
        )
    except openai.OpenAIError as exc:
        raise classify_openai_error(exc) from exc

    content = completion.choices[0].message.content if completion.choices else None
    if not content:
        raise ValidationError("No content generated by OpenAI", service=SERVICE_NAME)
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError as exc:
        logger.error("Caption model returned invalid JSON: %s", content[:200])
        raise ValidationError("Caption model returned invalid JSON", service=SERVICE_NAME) from exc
    return parsed
