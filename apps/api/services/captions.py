"""
Platform caption rules: limits, character counting, truncation, validation and selection.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.caption_settings import CaptionSettings
from multimodal.models import CaptionSettingsModel, PlatformCaption
from services.errors import ValidationError


@dataclass(frozen=True)
class PlatformCaptionConfig:
    max_length: int
    hashtag_count: int
    style: str


DEFAULT_PLATFORM_CONFIGS: Dict[str, PlatformCaptionConfig] = {
    "instagram": PlatformCaptionConfig(2200, 10, "engaging with emojis and storytelling"),
    "facebook": PlatformCaptionConfig(500, 5, "professional yet warm"),
    "tiktok": PlatformCaptionConfig(150, 3, "short, punchy, and viral"),
    "youtube": PlatformCaptionConfig(1000, 8, "descriptive and informative"),
}

CAPTION_SETTINGS_ROW_ID = 1
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")


def resolve_platform_configs(caption_settings: Optional[CaptionSettingsModel] = None) -> Dict[str, PlatformCaptionConfig]:
    """Defaults, overridden per platform when platform-specific settings are enabled."""
    if caption_settings is None or not caption_settings.platform_specific:
        return dict(DEFAULT_PLATFORM_CONFIGS)
    resolved: Dict[str, PlatformCaptionConfig] = {}
    for platform, default in DEFAULT_PLATFORM_CONFIGS.items():
        max_length = int(caption_settings.max_length.get(platform) or default.max_length)
        hashtag_count = caption_settings.hashtag_count.get(platform)
        resolved[platform] = PlatformCaptionConfig(
            max_length=max(max_length, 1),
            hashtag_count=default.hashtag_count if hashtag_count is None else max(int(hashtag_count), 0),
            style=caption_settings.platform_prompts.get(platform) or default.style,
        )
    return resolved


def resolve_call_to_action(caption_settings: Optional[CaptionSettingsModel] = None) -> str:
    """Call-to-action with {brandName}, {website} and {handle} filled in."""
    if caption_settings is None:
        return settings.CAPTION_CALL_TO_ACTION.strip()
    variables = caption_settings.custom_variables
    cta = (caption_settings.cta or settings.CAPTION_CALL_TO_ACTION)
    cta = (
        cta.replace("{brandName}", variables.brand_name)
        .replace("{website}", variables.website)
        .replace("{handle}", variables.handle)
    )
    return re.sub(r"\s{2,}", " ", cta).strip()


def caption_char_count(caption: str, hashtags: List[str]) -> int:
    """Caption length plus the hashtag line and its two separating line breaks."""
    joined = " ".join(hashtags)
    return len(caption) + (len(joined) + 2 if joined else 0)


def compose_post_text(caption: str, hashtags: List[str]) -> str:
    joined = " ".join(hashtags)
    return f"{caption}\n\n{joined}" if joined else caption


def _sentence_prefix(text: str, limit: int) -> str:
    kept: List[str] = []
    length = 0
    for sentence in _SENTENCE_SPLIT.split(text.strip()):
        sentence = sentence.strip()
        if not sentence:
            continue
        added = len(sentence) + (1 if kept else 0)
        if length + added > limit:
            break
        kept.append(sentence)
        length += added
    return " ".join(kept)


def _word_prefix(text: str, limit: int) -> str:
    if limit <= 0:
        return ""
    kept: List[str] = []
    length = 0
    for word in text.split():
        added = len(word) + (1 if kept else 0)
        if length + added > limit:
            break
        kept.append(word)
        length += added
    if not kept:
        return text.strip()[:limit].rstrip()
    return " ".join(kept)


def truncate_caption(caption: str, hashtags: List[str], max_length: int, cta: str) -> PlatformCaption:
    """
    Fit caption + hashtags into `max_length`, ending with `cta` whenever truncation occurs.

    Whole sentences are kept first; when that keeps less than half the room,
    the caption is cut at a word boundary with an ellipsis instead. Trailing
    hashtags are dropped when they leave no room for the call-to-action. If the
    call-to-action alone exceeds the limit, the caption is hard-cut without it.
    """
    hashtags = list(hashtags)
    if caption_char_count(caption, hashtags) <= max_length:
        return PlatformCaption(caption=caption, hashtags=hashtags, char_count=caption_char_count(caption, hashtags))

    cta = cta.strip()
    body_source = caption.replace(cta, "").strip() if cta else caption.strip()

    def room(tags: List[str]) -> int:
        return max_length - (caption_char_count("", tags))

    while hashtags and room(hashtags) < len(cta) + 1:
        hashtags.pop()
    available = room(hashtags)

    if len(cta) > available:
        text = _word_prefix(body_source, available)
        return PlatformCaption(caption=text, hashtags=hashtags, char_count=caption_char_count(text, hashtags))

    body_budget = available - len(cta) - 1 if cta else available
    body = _sentence_prefix(body_source, body_budget)
    if len(body) < body_budget * 0.5 and body_budget > 3:
        shortened = _word_prefix(body_source, body_budget - 3)
        body = f"{shortened}..." if shortened else ""

    text = f"{body} {cta}".strip() if body else cta
    return PlatformCaption(caption=text, hashtags=hashtags, char_count=caption_char_count(text, hashtags))


def _normalize_hashtags(raw: Any, limit: int) -> List[str]:
    tags: List[str] = []
    for item in raw:
        tag = str(item or "").strip().replace(" ", "")
        if not tag.lstrip("#"):
            continue
        if not tag.startswith("#"):
            tag = f"#{tag}"
        if tag not in tags:
            tags.append(tag)
    return tags[:limit]


def normalize_generated_captions(
    raw: Mapping[str, Any],
    configs: Optional[Dict[str, PlatformCaptionConfig]] = None,
    cta: Optional[str] = None,
    include_hashtags: bool = True,
) -> Dict[str, Dict[str, Any]]:
    """
    Validate generator output for every configured platform and enforce limits.

    Raises ValidationError (never retried) when a platform entry is missing or malformed.
    """
    configs = configs or resolve_platform_configs()
    cta = resolve_call_to_action() if cta is None else cta
    if not isinstance(raw, Mapping):
        raise ValidationError("Caption generator returned a non-object response", service="OpenAI")

    normalized: Dict[str, Dict[str, Any]] = {}
    for platform, config in configs.items():
        entry = raw.get(platform)
        if (
            not isinstance(entry, Mapping)
            or not isinstance(entry.get("caption"), str)
            or not entry["caption"].strip()
            or not isinstance(entry.get("hashtags"), list)
        ):
            raise ValidationError(
                f"Invalid response format for {platform}", fields=[platform], service="OpenAI"
            )
        hashtags = _normalize_hashtags(entry["hashtags"], config.hashtag_count) if include_hashtags else []
        fitted = truncate_caption(entry["caption"].strip(), hashtags, config.max_length, cta)
        normalized[platform] = fitted.model_dump()
    return normalized


def validate_caption_edits(
    captions: Mapping[str, Any],
    configs: Optional[Dict[str, PlatformCaptionConfig]] = None,
) -> Dict[str, Dict[str, Any]]:
    """Check user-edited captions against platform limits without rewriting them."""
    configs = configs or resolve_platform_configs()
    result: Dict[str, Dict[str, Any]] = {}
    for platform, entry in captions.items():
        if platform not in configs:
            raise ValidationError(f"Unsupported platform: {platform}", fields=[platform])
        parsed = PlatformCaption.model_validate(entry)
        char_count = caption_char_count(parsed.caption, parsed.hashtags)
        if char_count > configs[platform].max_length:
            raise ValidationError(
                f"{platform} caption is {char_count} characters; limit is {configs[platform].max_length}",
                fields=[platform],
            )
        result[platform] = {"caption": parsed.caption, "hashtags": parsed.hashtags, "char_count": char_count}
    return result


def legacy_caption_fields(captions: Mapping[str, Mapping[str, Any]]) -> Dict[str, Any]:
    """Single-caption fields kept for older readers: Instagram first, else any platform."""
    source = captions.get("instagram") or next(iter(captions.values()), None)
    if not source:
        return {"caption": None, "hashtags": None}
    return {"caption": source.get("caption"), "hashtags": list(source.get("hashtags") or [])}


def caption_for_platform(
    captions: Optional[Mapping[str, Any]],
    platform: str,
    legacy_caption: Optional[str] = None,
    legacy_hashtags: Optional[List[str]] = None,
) -> Optional[str]:
    """Text to publish on `platform`, falling back to the legacy single caption."""
    entry = (captions or {}).get(platform)
    if isinstance(entry, Mapping) and str(entry.get("caption") or "").strip():
        return compose_post_text(str(entry["caption"]).strip(), list(entry.get("hashtags") or []))
    if legacy_caption and legacy_caption.strip():
        return compose_post_text(legacy_caption.strip(), list(legacy_hashtags or []))
    return None


async def load_caption_settings(db: AsyncSession) -> CaptionSettingsModel:
    row = await db.get(CaptionSettings, CAPTION_SETTINGS_ROW_ID)
    if row is None or not row.settings:
        return CaptionSettingsModel()
    return CaptionSettingsModel.model_validate(row.settings)


async def save_caption_settings(db: AsyncSession, payload: CaptionSettingsModel) -> CaptionSettingsModel:
    row = await db.get(CaptionSettings, CAPTION_SETTINGS_ROW_ID)
    if row is None:
        row = CaptionSettings(id=CAPTION_SETTINGS_ROW_ID, settings=payload.model_dump())
        db.add(row)
    else:
        row.settings = payload.model_dump()
    await db.commit()
    return payload
