"""Routers package."""

from . import (
    health,
    auth,
    videos,
    publish,
    credentials,
    analytics,
    caption_settings,
)
