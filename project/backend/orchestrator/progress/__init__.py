"""
Progress tracking: channel, sources and publisher.
"""

from orchestrator.progress.channel import ProgressChannel, ProgressSubscription
from orchestrator.progress.publisher import ProgressPublisher
from orchestrator.progress.sources import (
    DatabasePollSource,
    RedisPushSource,
    SSEPushSource,
    progress_channel_name,
)

__all__ = [
    "ProgressChannel",
    "ProgressSubscription",
    "ProgressPublisher",
    "DatabasePollSource",
    "RedisPushSource",
    "SSEPushSource",
    "progress_channel_name",
]
