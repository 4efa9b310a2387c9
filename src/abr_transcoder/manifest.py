"""HLS master manifest accumulator.

Concurrent encode runs append their variant as they finish; the manifest
keeps completion order and is frozen once rendered to disk.
"""

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import List, Tuple

from .errors import ManifestError
from .models import ResolutionTask

MASTER_PLAYLIST_NAME = "master.m3u8"
HLS_VERSION = 3


@dataclass(frozen=True)
class VariantEntry:
    """One ``#EXT-X-STREAM-INF`` entry."""
    bandwidth: int
    width: int
    height: int
    uri: str

    @classmethod
    def for_rung(cls, rung: ResolutionTask) -> "VariantEntry":
        return cls(
            bandwidth=rung.bandwidth,
            width=rung.width,
            height=rung.height,
            uri=rung.playlist_uri,
        )

    def lines(self) -> Tuple[str, str]:
        return (
            f"#EXT-X-STREAM-INF:BANDWIDTH={self.bandwidth},RESOLUTION={self.width}x{self.height}",
            self.uri,
        )


class MasterManifest:
    """Synchronized, append-only list of variants for one job."""

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: List[VariantEntry] = []
        self._frozen = False

    def append(self, entry: VariantEntry) -> None:
        with self._lock:
            if self._frozen:
                raise ManifestError("master manifest already written")
            if any(existing.uri == entry.uri for existing in self._entries):
                raise ManifestError(f"duplicate variant {entry.uri}")
            self._entries.append(entry)

    @property
    def entries(self) -> Tuple[VariantEntry, ...]:
        with self._lock:
            return tuple(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def render(self) -> str:
        with self._lock:
            lines = ["#EXTM3U", f"#EXT-X-VERSION:{HLS_VERSION}"]
            for entry in self._entries:
                lines.extend(entry.lines())
        return "\n".join(lines) + "\n"

    def write(self, output_dir: Path) -> Path:
        """Write ``master.m3u8`` into ``output_dir`` and freeze the manifest.

        Raises:
            ManifestError: If the manifest is empty or the file cannot be written.
        """
        with self._lock:
            if not self._entries:
                raise ManifestError("refusing to write a master manifest with no variants")
            self._frozen = True

        path = Path(output_dir) / MASTER_PLAYLIST_NAME
        try:
            path.write_text(self.render(), encoding="utf-8")
        except OSError as e:
            raise ManifestError(f"failed to write {path}: {e}") from e
        return path
