"""Tests for the master manifest accumulator."""

import threading

import pytest

from abr_transcoder.errors import ManifestError
from abr_transcoder.manifest import MasterManifest, VariantEntry
from abr_transcoder.models import DEFAULT_LADDER


class TestVariantEntry:
    def test_bandwidth_is_kbps_times_1024(self):
        rung = DEFAULT_LADDER[3]  # 720p
        entry = VariantEntry.for_rung(rung)

        assert entry.bandwidth == 2500 * 1024
        assert entry.lines() == (
            "#EXT-X-STREAM-INF:BANDWIDTH=2560000,RESOLUTION=1280x720",
            "720p/720p.m3u8",
        )


class TestMasterManifest:
    """Test rendering and concurrent appends."""

    def test_render_in_append_order(self):
        manifest = MasterManifest()
        manifest.append(VariantEntry.for_rung(DEFAULT_LADDER[1]))
        manifest.append(VariantEntry.for_rung(DEFAULT_LADDER[0]))

        assert manifest.render() == (
            "#EXTM3U\n"
            "#EXT-X-VERSION:3\n"
            "#EXT-X-STREAM-INF:BANDWIDTH=819200,RESOLUTION=640x360\n"
            "360p/360p.m3u8\n"
            "#EXT-X-STREAM-INF:BANDWIDTH=409600,RESOLUTION=426x240\n"
            "240p/240p.m3u8\n"
        )

    def test_concurrent_appends_keep_every_entry(self):
        manifest = MasterManifest()
        barrier = threading.Barrier(len(DEFAULT_LADDER))

        def add(rung):
            barrier.wait()
            manifest.append(VariantEntry.for_rung(rung))

        threads = [threading.Thread(target=add, args=(rung,)) for rung in DEFAULT_LADDER]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(manifest) == 5
        assert {e.uri for e in manifest.entries} == {r.playlist_uri for r in DEFAULT_LADDER}
        assert manifest.render().count("#EXT-X-STREAM-INF") == 5

    def test_duplicate_variant_rejected(self):
        manifest = MasterManifest()
        manifest.append(VariantEntry.for_rung(DEFAULT_LADDER[0]))

        with pytest.raises(ManifestError):
            manifest.append(VariantEntry.for_rung(DEFAULT_LADDER[0]))

    def test_write_freezes(self, tmp_path):
        manifest = MasterManifest()
        manifest.append(VariantEntry.for_rung(DEFAULT_LADDER[0]))

        path = manifest.write(tmp_path)

        assert path == tmp_path / "master.m3u8"
        assert path.read_text() == manifest.render()
        with pytest.raises(ManifestError):
            manifest.append(VariantEntry.for_rung(DEFAULT_LADDER[1]))

    def test_empty_manifest_not_written(self, tmp_path):
        with pytest.raises(ManifestError):
            MasterManifest().write(tmp_path)
        assert not (tmp_path / "master.m3u8").exists()
