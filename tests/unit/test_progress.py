"""Unit tests for the progress channel."""

import pytest

from waypoint.core.models import ProgressEvent, ProgressStage
from waypoint.orchestrator.progress import ProgressChannel


class TestProgressChannel:
    """Tests for ProgressChannel."""

    @pytest.mark.asyncio
    async def test_publish_reaches_subscriber_with_session_id(self):
        channel = ProgressChannel()
        queue = channel.subscribe("s-1")

        delivered = channel.publish("s-1", ProgressEvent(stage=ProgressStage.SCORING))

        assert delivered == 1
        event = queue.get_nowait()
        assert event.session_id == "s-1"
        assert event.stage == ProgressStage.SCORING

    def test_publish_without_subscribers_is_dropped(self):
        channel = ProgressChannel()
        assert channel.publish("nobody", ProgressEvent(stage=ProgressStage.STARTED)) == 0

    @pytest.mark.asyncio
    async def test_sessions_are_isolated(self):
        channel = ProgressChannel()
        first = channel.subscribe("s-1")
        second = channel.subscribe("s-2")

        channel.publish("s-1", ProgressEvent(stage=ProgressStage.STARTED))

        assert first.qsize() == 1
        assert second.qsize() == 0

    @pytest.mark.asyncio
    async def test_full_queue_drops_event(self):
        channel = ProgressChannel(max_queue_size=1)
        queue = channel.subscribe("s-1")

        channel.publish("s-1", ProgressEvent(stage=ProgressStage.STARTED))
        delivered = channel.publish("s-1", ProgressEvent(stage=ProgressStage.SCORING))

        assert delivered == 0
        assert queue.qsize() == 1
        assert queue.get_nowait().stage == ProgressStage.STARTED

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        channel = ProgressChannel()
        queue = channel.subscribe("s-1")

        channel.unsubscribe("s-1", queue)
        channel.unsubscribe("s-1", queue)

        assert channel.subscriber_count("s-1") == 0
        assert channel.publish("s-1", ProgressEvent(stage=ProgressStage.STARTED)) == 0

    @pytest.mark.asyncio
    async def test_publisher_callback(self):
        channel = ProgressChannel()
        queue = channel.subscribe("s-1")
        publish = channel.publisher("s-1")

        publish(ProgressEvent(stage=ProgressStage.COMPLETED, progress_pct=1.0))

        assert queue.get_nowait().progress_pct == 1.0
