import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from abr_transcoder.engine import EncodingEngine, SourceInfo
from abr_transcoder.errors import EngineError
from abr_transcoder.models import DEFAULT_LADDER, TranscoderConfig
from abr_transcoder.progress import InMemoryProgressBus
from abr_transcoder.relay import RoomMember
from abr_transcoder.storage import LocalObjectStore

TWO_RUNGS = [rung for rung in DEFAULT_LADDER if rung.name in ("240p", "360p")]


class FakeClock:
    """Manually advanced UTC clock for lease and backoff tests."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class StubEngine(EncodingEngine):
    """Stands in for ffmpeg: reports fixed progress and writes a tiny HLS variant."""

    def __init__(
        self,
        progress=(10.0, 55.5, 100.0),
        fail_on=(),
        info=None,
        hooks=None,
    ):
        self.progress = progress
        self.fail_on = set(fail_on)
        self.info = info or SourceInfo(duration_s=12.0, width=1920, height=1080)
        self.hooks = hooks or {}
        self.calls = []
        self.probed = []
        self.cancel_events = {}
        self._lock = threading.Lock()

    def probe(self, source):
        self.probed.append(Path(source))
        return self.info

    def encode_variant(
        self, source, rung, output_dir, on_progress, duration_s=None, cancel_event=None
    ):
        with self._lock:
            self.calls.append((rung.name, duration_s))
            self.cancel_events[rung.name] = cancel_event

        hook = self.hooks.get(rung.name)
        if hook is not None:
            hook(cancel_event)

        for percent in self.progress:
            on_progress(percent)

        if rung.name in self.fail_on:
            raise EngineError(f"ffmpeg failed for {rung.name}", resolution=rung.name)

        output_dir.mkdir(parents=True, exist_ok=True)
        playlist = output_dir / rung.playlist_name
        playlist.write_text(
            "#EXTM3U\n#EXT-X-VERSION:3\n#EXT-X-TARGETDURATION:10\n"
            "#EXTINF:10.0,\nsegment000.ts\n#EXT-X-ENDLIST\n"
        )
        (output_dir / "segment000.ts").write_bytes(b"\x47" * 188)
        return playlist


class RecordingMember(RoomMember):
    """Room member that keeps every payload it is sent."""

    def __init__(self):
        self.payloads = []

    def deliver(self, payload):
        self.payloads.append(payload)


class RecordingStore(LocalObjectStore):
    """Local store that remembers the order of writes."""

    def __init__(self, root, public_base_url=None):
        super().__init__(root, public_base_url=public_base_url)
        self.put_keys = []

    def put(self, key, stream, content_type="application/octet-stream"):
        super().put(key, stream, content_type)
        self.put_keys.append(key)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path):
    store = RecordingStore(tmp_path / "store", public_base_url="https://cdn.example.com")
    (tmp_path / "upload.mp4").write_bytes(b"fake video bytes" * 64)
    store.put_file("raw_videos/clip.mp4", tmp_path / "upload.mp4")
    store.put_keys.clear()
    return store


@pytest.fixture
def bus():
    return InMemoryProgressBus()


@pytest.fixture
def events(bus):
    """Every event published on the default channel."""
    received = []
    bus.subscribe("video_transcoding_progress", received.append)
    return received


@pytest.fixture
def config(tmp_path):
    """Two-rung config with all scratch space under tmp_path."""
    return TranscoderConfig.from_dict(
        {
            "queue": {"db_path": str(tmp_path / "queue.db"), "backoff_delay_s": 0.0},
            "worker": {"poll_interval_s": 0.01},
            "progress": {"backend": "memory"},
            "storage": {
                "local_root": str(tmp_path / "store"),
                "public_base_url": "https://cdn.example.com",
                "staging_dir": str(tmp_path / "scratch" / "staging"),
                "scratch_dir": str(tmp_path / "scratch" / "output"),
            },
            "ladder": [rung.model_dump() for rung in TWO_RUNGS],
        }
    )
