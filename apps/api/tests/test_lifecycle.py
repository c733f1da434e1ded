import pytest

from models.video import Video
from multimodal.models import CaptionSettingsModel, TranscriptResult
from services.captions import save_caption_settings
from services.errors import InvalidStateError, NotFoundError, ValidationError
from services.lifecycle import TRANSITIONS, VIDEO_STATUSES, VideoLifecycle, apply_transition


def _video(status):
    return Video(id="v", title="t", file_url="https://cdn.test/v.mp4", status=status)


@pytest.mark.parametrize("trigger", sorted(TRANSITIONS))
@pytest.mark.parametrize("status", VIDEO_STATUSES)
def test_transition_table_is_enforced(trigger, status):
    allowed, target = TRANSITIONS[trigger]
    video = _video(status)
    kwargs = {"error_message": "boom"}
    if trigger == "publish_complete":
        kwargs["status"] = "posted"

    if status in allowed:
        apply_transition(video, trigger, **kwargs)
        assert video.status == (target or "posted")
    else:
        with pytest.raises(InvalidStateError) as exc_info:
            apply_transition(video, trigger, **kwargs)
        assert exc_info.value.status == 409
        assert video.status == status


def test_publishing_video_cannot_restart_transcription():
    with pytest.raises(InvalidStateError):
        apply_transition(_video("publishing"), "transcription_start")


def test_error_transition_requires_message():
    with pytest.raises(ValueError):
        apply_transition(_video("ready"), "error", error_message="  ")


def test_publish_complete_requires_result_status():
    with pytest.raises(ValueError):
        apply_transition(_video("publishing"), "publish_complete", status="ready")


def test_successful_transition_clears_previous_error():
    video = _video("error")
    video.error_message = "old failure"
    apply_transition(video, "transcription_start")
    assert video.status == "transcribing"
    assert video.error_message is None


@pytest.mark.asyncio
async def test_video_moves_from_upload_to_ready(session_maker):
    async with session_maker() as db:
        lifecycle = VideoLifecycle(db)
        video = await lifecycle.create_video(
            title=" Launch clip ",
            file_url="https://cdn.test/launch.mp4",
            selected_platforms=["Facebook", "instagram", "facebook"],
        )
        assert video.status == "uploaded"
        assert video.title == "Launch clip"
        assert video.selected_platforms == ["facebook", "instagram"]

        await lifecycle.start_transcription(video.id)
        video = await lifecycle.complete_transcription(
            video.id, TranscriptResult(text="hello there friends", confidence=0.9)
        )
        assert video.status == "uploaded"
        assert video.transcript_word_count == 3

        await lifecycle.start_caption_generation(video.id)
        video = await lifecycle.complete_caption_generation(
            video.id,
            {
                "facebook": {"caption": "FB", "hashtags": ["#fb"], "char_count": 7},
                "instagram": {"caption": "IG", "hashtags": ["#ig"], "char_count": 7},
            },
        )
        assert video.status == "uploaded"
        assert video.caption == "IG"
        assert video.hashtags == ["#ig"]

        video = await lifecycle.approve_captions(
            video.id,
            {"facebook": {"caption": "Edited FB", "hashtags": ["#fb"]}},
            ["facebook"],
        )
        assert video.status == "ready"
        assert video.selected_platforms == ["facebook"]
        assert video.captions["facebook"]["caption"] == "Edited FB"
        assert video.captions["instagram"]["caption"] == "IG"


@pytest.mark.asyncio
async def test_caption_generation_requires_transcript(session_maker):
    async with session_maker() as db:
        lifecycle = VideoLifecycle(db)
        video = await lifecycle.create_video(title="No audio", file_url="https://cdn.test/a.mp4")
        with pytest.raises(ValidationError):
            await lifecycle.start_caption_generation(video.id)
        assert (await lifecycle.get_video(video.id)).status == "uploaded"


@pytest.mark.asyncio
async def test_approval_checks_stored_platform_limits(session_maker):
    async with session_maker() as db:
        await save_caption_settings(db, CaptionSettingsModel(max_length={"facebook": 20}))
        lifecycle = VideoLifecycle(db)
        video = await lifecycle.create_video(title="Clip", file_url="https://cdn.test/c.mp4")
        with pytest.raises(ValidationError):
            await lifecycle.approve_captions(
                video.id, {"facebook": {"caption": "x" * 21, "hashtags": []}}, ["facebook"]
            )


@pytest.mark.asyncio
async def test_unknown_platforms_and_videos_are_rejected(session_maker):
    async with session_maker() as db:
        lifecycle = VideoLifecycle(db)
        with pytest.raises(ValidationError):
            await lifecycle.create_video(title="Clip", file_url="https://cdn.test/c.mp4", selected_platforms=["myspace"])
        with pytest.raises(NotFoundError):
            await lifecycle.get_video("missing")


@pytest.mark.asyncio
async def test_fail_records_error_message(session_maker):
    async with session_maker() as db:
        lifecycle = VideoLifecycle(db)
        video = await lifecycle.create_video(title="Clip", file_url="https://cdn.test/c.mp4")
        await lifecycle.start_transcription(video.id)
        video = await lifecycle.fail(video.id, "Transcription failed: audio unreadable")
        assert video.status == "error"
        assert video.error_message == "Transcription failed: audio unreadable"
