"""Build long-lived handles (store, bus, engine, queue) from configuration.

Handles are created once at process start and shared by every worker slot.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from .engine import EncodingEngine, FfmpegHlsEngine
from .models import ProgressConfig, QueueConfig, StorageConfig, TranscoderConfig
from .orchestrator import EncodeOrchestrator
from .progress import InMemoryProgressBus, ProgressBus, RedisProgressBus
from .queue import JobWorkerPool, QueueBackend, SQLiteQueue
from .storage import LocalObjectStore, ObjectStore, S3ObjectStore

logger = logging.getLogger(__name__)


def build_store(storage: StorageConfig) -> ObjectStore:
    if storage.backend == "s3":
        return S3ObjectStore(
            bucket=storage.bucket,
            region=storage.region,
            endpoint_url=storage.endpoint_url,
            access_key=storage.access_key,
            secret_key=storage.secret_key,
            public_base_url=storage.public_base_url,
        )
    return LocalObjectStore(storage.local_root, public_base_url=storage.public_base_url)


def build_bus(progress: ProgressConfig) -> ProgressBus:
    if progress.backend == "redis":
        return RedisProgressBus(url=progress.redis_url)
    return InMemoryProgressBus()


def build_queue_factory(queue: QueueConfig) -> Callable[[], QueueBackend]:
    """One fresh SQLiteQueue per call (SQLite connections are per thread)."""

    def factory() -> QueueBackend:
        return SQLiteQueue.from_config(queue)

    return factory


@dataclass
class Runtime:
    config: TranscoderConfig
    store: ObjectStore
    bus: ProgressBus
    engine: EncodingEngine
    orchestrator: EncodeOrchestrator
    queue_factory: Callable[[], QueueBackend]

    def worker_pool(self, concurrency: Optional[int] = None) -> JobWorkerPool:
        return JobWorkerPool(
            self.queue_factory,
            self.orchestrator,
            concurrency=concurrency or self.config.worker.concurrency,
            poll_interval_s=self.config.worker.poll_interval_s,
            heartbeat_interval_s=self.config.queue.heartbeat_interval_s,
        )

    def close(self) -> None:
        self.bus.close()


def build_runtime(
    config: TranscoderConfig,
    store: Optional[ObjectStore] = None,
    bus: Optional[ProgressBus] = None,
    engine: Optional[EncodingEngine] = None,
    queue_factory: Optional[Callable[[], QueueBackend]] = None,
) -> Runtime:
    """Wire every component; explicit arguments replace the configured ones."""
    store = store or build_store(config.storage)
    bus = bus or build_bus(config.progress)
    engine = engine or FfmpegHlsEngine(config.engine)
    logger.debug(
        "Runtime: store=%s bus=%s engine=%s",
        type(store).__name__, type(bus).__name__, type(engine).__name__,
    )
    return Runtime(
        config=config,
        store=store,
        bus=bus,
        engine=engine,
        orchestrator=EncodeOrchestrator(store, bus, engine, config),
        queue_factory=queue_factory or build_queue_factory(config.queue),
    )
