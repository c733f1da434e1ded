import logging
import math
import os
import uuid
from pathlib import Path
from typing import Any, Optional

import httpx
import openai

from config import settings
from services.errors import RemoteTransientError, classify_http_failure
from .llm import classify_openai_error, get_openai_client
from .models import TranscriptResult

logger = logging.getLogger(__name__)

NO_SPEECH_TEXT = "No speech detected in the video."


def download_media(file_url: str, dest_dir: Optional[str] = None) -> Path:
    """
    Stream the uploaded media to a temporary file.
    Returns path to the downloaded file.
    """
    target_dir = Path(dest_dir or settings.MEDIA_DOWNLOAD_DIR)
    target_dir.mkdir(parents=True, exist_ok=True)
    suffix = Path(file_url.split("?", 1)[0]).suffix or ".mp4"
    target = target_dir / f"{uuid.uuid4().hex}{suffix}"

    try:
        with httpx.stream("GET", file_url, follow_redirects=True, timeout=120.0) as response:
            if response.status_code >= 400:
                raise classify_http_failure("Media storage", response.status_code, f"download failed for {file_url}")
            with open(target, "wb") as handle:
                for chunk in response.iter_bytes():
                    handle.write(chunk)
    except httpx.TransportError as exc:
        target.unlink(missing_ok=True)
        raise RemoteTransientError(f"Media download failed: {exc}", service="Media storage") from exc
    except Exception:
        target.unlink(missing_ok=True)
        raise
    return target


def _field(payload: Any, name: str, default: Any = None) -> Any:
    if isinstance(payload, dict):
        return payload.get(name, default)
    return getattr(payload, name, default)


def transcript_from_response(payload: Any) -> TranscriptResult:
    """Build a TranscriptResult from a Whisper verbose_json response."""
    text = str(_field(payload, "text", "") or "").strip() or NO_SPEECH_TEXT
    segments = _field(payload, "segments", None) or []

    # Whisper reports avg_logprob per segment; exp() maps it back to a 0..1 probability
    probabilities = []
    for segment in segments:
        avg_logprob = _field(segment, "avg_logprob", None)
        if avg_logprob is not None:
            probabilities.append(min(max(math.exp(float(avg_logprob)), 0.0), 1.0))
    confidence = sum(probabilities) / len(probabilities) if probabilities else 0.0

    duration = _field(payload, "duration", None)
    return TranscriptResult(
        text=text,
        confidence=round(confidence, 4),
        word_count=0 if text == NO_SPEECH_TEXT else len(text.split()),
        language=_field(payload, "language", None),
        duration_seconds=float(duration) if duration is not None else None,
    )


def transcribe_media(file_url: str, api_key: Optional[str] = None) -> TranscriptResult:
    """
    Download media and transcribe it with OpenAI Whisper.
    Raises pipeline errors (retryable for rate limits, 5xx and network failures).
    """
    client = get_openai_client(api_key)
    media_path = download_media(file_url)
    try:
        with open(media_path, "rb") as media_file:
            transcript = client.audio.transcriptions.create(
                model=settings.TRANSCRIPTION_MODEL,
                file=media_file,
                response_format="verbose_json",
                timestamp_granularities=["segment"],
            )
    except openai.OpenAIError as exc:
        logger.error("Error transcribing media: %s", exc)
        raise classify_openai_error(exc) from exc
    finally:
        try:
            os.remove(media_path)
        except OSError:
            logger.warning("Could not cleanup downloaded media %s", media_path)

    return transcript_from_response(transcript)
