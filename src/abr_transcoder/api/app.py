from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, Optional, TypeVar

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from abr_transcoder.config import resolve_config
from abr_transcoder.pipeline import enqueue_transcode_job
from abr_transcoder.progress import InMemoryProgressBus
from abr_transcoder.queue import QueueBackend
from abr_transcoder.relay import ProgressRelay, RoomMember
from abr_transcoder.runtime import Runtime, build_runtime

logger = logging.getLogger(__name__)

T = TypeVar("T")


# --- Pydantic Models for Requests/Responses ---
class BackoffSpec(BaseModel):
    type: str = "exponential"
    delay_ms: int = Field(default=5000, ge=0)


class JobCreate(BaseModel):
    videoId: str = Field(..., min_length=1)  # noqa: N815
    sourceStorageKey: str = Field(..., min_length=1)  # noqa: N815
    attempts: int = Field(default=3, ge=1)
    backoff: BackoffSpec = Field(default_factory=BackoffSpec)


class JobCreated(BaseModel):
    jobId: str  # noqa: N815


# --- WebSocket room member ---
class WebSocketMember(RoomMember):
    """Bridges relay deliveries (any thread) onto one socket's event loop.

    Payloads go through an outbox drained by a single sender task, so events
    reach the client in delivery order.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop):
        self.loop = loop
        self.outbox: asyncio.Queue = asyncio.Queue()

    def deliver(self, payload: Dict[str, Any]) -> None:
        # Raises RuntimeError once the loop is closed; the relay then drops us
        self.loop.call_soon_threadsafe(self.outbox.put_nowait, payload)

    def send_local(self, payload: Dict[str, Any]) -> None:
        """Queue a control message from the socket's own loop."""
        self.outbox.put_nowait(payload)

    async def pump(self, websocket: WebSocket) -> None:
        while True:
            payload = await self.outbox.get()
            await websocket.send_json(payload)


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the API.

    Run with ``uvicorn abr_transcoder.api:create_app --factory``.
    """
    runtime = runtime or build_runtime(resolve_config())
    if isinstance(runtime.bus, InMemoryProgressBus):
        logger.warning(
            "Progress bus is in-memory: only workers inside this process reach /ws/progress rooms"
        )
    relay = ProgressRelay(runtime.bus, channel=runtime.config.progress.channel).start()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        relay.stop()

    app = FastAPI(title="abr-transcoder", lifespan=lifespan)
    app.state.runtime = runtime
    app.state.relay = relay

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # For dev
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    async def with_queue(fn: Callable[[QueueBackend], T]) -> T:
        """Run ``fn`` in a worker thread with its own queue connection."""

        def call() -> T:
            queue = runtime.queue_factory()
            try:
                return fn(queue)
            finally:
                queue.close()

        return await asyncio.to_thread(call)

    @app.get("/health")
    async def health():
        counts = await with_queue(lambda q: q.stats())
        return {"status": "ok", "queue": counts, "rooms": relay.room_sizes()}

    @app.post("/jobs", response_model=JobCreated, status_code=status.HTTP_201_CREATED)
    async def create_job(body: JobCreate):
        try:
            job_id = await with_queue(
                lambda q: enqueue_transcode_job(
                    q,
                    body.videoId,
                    body.sourceStorageKey,
                    attempts=body.attempts,
                    backoff=body.backoff.model_dump(),
                )
            )
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        return {"jobId": job_id}

    @app.get("/jobs/{job_id}")
    async def get_job(job_id: str):
        def load(q: QueueBackend):
            job = q.get_job(job_id)
            if job is None:
                return None
            return {
                **job.model_dump(mode="json"),
                "transitions": [t.model_dump(mode="json") for t in q.transitions(job_id)],
            }

        result = await with_queue(load)
        if result is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return result

    @app.websocket("/ws/progress")
    async def progress_socket(websocket: WebSocket):
        await websocket.accept()
        member = WebSocketMember(asyncio.get_running_loop())
        sender = asyncio.create_task(member.pump(websocket))
        try:
            while True:
                try:
                    message = await websocket.receive_json()
                except (KeyError, ValueError):
                    # KeyError: binary frame
                    member.send_local({"error": "messages must be JSON text frames"})
                    continue

                action = message.get("action") if isinstance(message, dict) else None
                video_id = message.get("videoId") if isinstance(message, dict) else None
                if action not in ("join", "leave") or not video_id:
                    member.send_local({"error": "expected {action: join|leave, videoId}"})
                    continue

                video_id = str(video_id)
                if action == "join":
                    relay.join(member, video_id)
                    member.send_local({"event": "joined", "videoId": video_id})
                else:
                    relay.leave(member, video_id)
                    member.send_local({"event": "left", "videoId": video_id})
        except WebSocketDisconnect:
            pass
        finally:
            relay.disconnect(member)
            sender.cancel()
            (outcome,) = await asyncio.gather(sender, return_exceptions=True)
            if not isinstance(outcome, asyncio.CancelledError):
                logger.debug("Progress socket sender stopped: %r", outcome)

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
