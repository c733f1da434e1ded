"""Models package."""

from .video import Video
from .platform_credential import PlatformCredential
from .post import Post
from .post_analytics import PostAnalytics
from .analytics_error import AnalyticsError
from .caption_settings import CaptionSettings
from .pipeline_job import PipelineJob
