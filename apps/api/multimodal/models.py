from typing import Dict, List, Optional
from pydantic import BaseModel, Field


class TranscriptResult(BaseModel):
    text: str
    confidence: float = 0.0  # 0..1
    word_count: int = 0
    language: Optional[str] = None
    duration_seconds: Optional[float] = None


class PlatformCaption(BaseModel):
    caption: str
    hashtags: List[str] = Field(default_factory=list)
    char_count: int = 0


class CaptionVariables(BaseModel):
    brand_name: str = ""
    website: str = ""
    handle: str = ""


class CaptionSettingsModel(BaseModel):
    """Operator preferences for caption generation (stored as a single row)."""

    system_prompt: str = (
        "You are a social media expert. Create engaging, platform-optimized captions from video transcripts. "
        "Focus on:\n- Hook the audience in the first line\n- Keep it conversational and engaging\n"
        "- Include relevant hashtags\n- End with a strong call-to-action\n"
        "- Optimize for each platform's best practices"
    )
    tone: str = "casual"  # casual, professional, inspirational, custom
    custom_tone: str = ""
    cta: str = "What do you think? Drop a comment below!"
    include_hashtags: bool = True
    platform_specific: bool = True
    platform_prompts: Dict[str, str] = Field(default_factory=dict)
    max_length: Dict[str, int] = Field(default_factory=dict)  # per-platform overrides
    hashtag_count: Dict[str, int] = Field(default_factory=dict)
    custom_variables: CaptionVariables = Field(default_factory=CaptionVariables)
