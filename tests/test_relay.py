"""Tests for routing progress events into per-video rooms."""

from abr_transcoder.models import ProgressEvent, ProgressStatus
from abr_transcoder.progress import InMemoryProgressBus
from abr_transcoder.relay import ProgressRelay, RoomMember

from conftest import RecordingMember

CHANNEL = "video_transcoding_progress"


class BrokenMember(RoomMember):
    def deliver(self, payload):
        raise ConnectionError("socket closed")


def publish(bus, video_id, percent=10):
    bus.publish(
        CHANNEL,
        ProgressEvent(video_id=video_id, resolution="240p", percent=percent, status=ProgressStatus.IN_PROGRESS),
    )


class TestProgressRelay:
    """Test room membership and delivery."""

    def test_events_reach_only_their_room(self):
        bus = InMemoryProgressBus()
        watcher_a, watcher_b = RecordingMember(), RecordingMember()

        with ProgressRelay(bus, CHANNEL) as relay:
            relay.join(watcher_a, "vid-a")
            relay.join(watcher_b, "vid-b")
            publish(bus, "vid-a")

        assert [p["videoId"] for p in watcher_a.payloads] == ["vid-a"]
        assert watcher_b.payloads == []

    def test_delivery_preserves_order(self):
        bus = InMemoryProgressBus()
        member = RecordingMember()

        with ProgressRelay(bus, CHANNEL) as relay:
            relay.join(member, "vid-a")
            for percent in (10, 40, 90):
                publish(bus, "vid-a", percent)

        assert [p["percent"] for p in member.payloads] == [10, 40, 90]

    def test_member_in_several_rooms(self):
        bus = InMemoryProgressBus()
        member = RecordingMember()

        with ProgressRelay(bus, CHANNEL) as relay:
            relay.join(member, "vid-a")
            relay.join(member, "vid-b")
            publish(bus, "vid-a")
            publish(bus, "vid-b")
            relay.leave(member, "vid-a")
            publish(bus, "vid-a")

        assert [p["videoId"] for p in member.payloads] == ["vid-a", "vid-b"]

    def test_disconnect_removes_from_every_room(self):
        relay = ProgressRelay(InMemoryProgressBus(), CHANNEL)
        member = RecordingMember()
        relay.join(member, "vid-a")
        relay.join(member, "vid-b")

        relay.disconnect(member)

        assert relay.room_sizes() == {}

    def test_failed_delivery_drops_member(self):
        bus = InMemoryProgressBus()
        broken, healthy = BrokenMember(), RecordingMember()

        with ProgressRelay(bus, CHANNEL) as relay:
            relay.join(broken, "vid-a")
            relay.join(healthy, "vid-a")
            publish(bus, "vid-a")

            assert relay.members("vid-a") == [healthy]
        assert len(healthy.payloads) == 1

    def test_stop_unsubscribes(self):
        bus = InMemoryProgressBus()
        relay = ProgressRelay(bus, CHANNEL).start()
        relay.start()
        assert bus.subscriber_count(CHANNEL) == 1

        relay.stop()

        assert bus.subscriber_count(CHANNEL) == 0

    def test_leave_unknown_room_is_noop(self):
        relay = ProgressRelay(InMemoryProgressBus(), CHANNEL)
        relay.leave(RecordingMember(), "nobody")
        assert relay.room_sizes() == {}
