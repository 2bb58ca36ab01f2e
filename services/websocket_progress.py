"""WebSocket progress manager for real-time generation job updates."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from fastapi import WebSocket

from shared.enums import JobState
from shared.utils import setup_logging

if TYPE_CHECKING:
    from models.database import GenerationJob
    from services.generation.scheduler import Scheduler

logger = setup_logging("websocket-progress")


class WebSocketProgressManager:
    """Track WebSocket connections and job subscriptions."""

    def __init__(self) -> None:
        self._connections: dict[str, WebSocket] = {}
        self._job_subscriptions: dict[str, set[str]] = defaultdict(set)
        self._client_jobs: dict[str, set[str]] = defaultdict(set)
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, client_id: str | None = None) -> str:
        """Accept WebSocket connection and register client."""
        client_key = client_id or str(uuid4())
        await websocket.accept()
        async with self._lock:
            self._connections[client_key] = websocket
        return client_key

    async def disconnect(self, client_id: str) -> None:
        """Remove client connection and subscriptions."""
        async with self._lock:
            websocket = self._connections.pop(client_id, None)
            for job_id in self._client_jobs.pop(client_id, set()):
                subscribers = self._job_subscriptions.get(job_id)
                if subscribers:
                    subscribers.discard(client_id)
                    if not subscribers:
                        self._job_subscriptions.pop(job_id, None)
        if websocket:
            await self._close_quietly(client_id, websocket)

    async def subscribe(self, client_id: str, job_id: str) -> None:
        """Subscribe a client to a specific job."""
        async with self._lock:
            if client_id not in self._connections:
                raise RuntimeError("Client not connected")
            self._job_subscriptions[job_id].add(client_id)
            self._client_jobs[client_id].add(job_id)

    async def unsubscribe(self, client_id: str, job_id: str | None = None) -> None:
        """Unsubscribe a client from a job or from all jobs."""
        async with self._lock:
            if client_id not in self._connections:
                return

            job_ids = list(self._client_jobs.get(client_id, set())) if job_id is None else [job_id]
            for jid in job_ids:
                subscribers = self._job_subscriptions.get(jid)
                if subscribers:
                    subscribers.discard(client_id)
                    if not subscribers:
                        self._job_subscriptions.pop(jid, None)
            if job_id is None:
                self._client_jobs.pop(client_id, None)
            else:
                self._client_jobs.get(client_id, set()).discard(job_id)

    def subscriber_count(self, job_id: str) -> int:
        return len(self._job_subscriptions.get(job_id, ()))

    async def send_progress_update(self, job_id: str, progress_data: dict[str, Any]) -> int:
        """Send progress update to all subscribers of a job; returns recipients reached."""
        async with self._lock:
            recipients = [
                (client_id, self._connections[client_id])
                for client_id in self._job_subscriptions.get(job_id, set())
                if client_id in self._connections
            ]

        delivered = 0
        for client_id, websocket in recipients:
            try:
                await websocket.send_json(progress_data)
                delivered += 1
            except Exception as exc:  # noqa: BLE001
                logger.info(f"Dropping client {client_id} after failed send: {exc}")
                await self.disconnect(client_id)
        return delivered

    async def reset(self) -> None:
        """Clear all connections and subscriptions (primarily for tests)."""
        async with self._lock:
            connections = list(self._connections.items())
            self._connections.clear()
            self._job_subscriptions.clear()
            self._client_jobs.clear()

        for client_id, websocket in connections:
            await self._close_quietly(client_id, websocket)

    @staticmethod
    async def _close_quietly(client_id: str, websocket: WebSocket) -> None:
        try:
            await websocket.close()
        except Exception as exc:  # noqa: BLE001
            logger.debug(f"Closing client {client_id} failed: {exc}")


def job_update_payload(job: GenerationJob, previous: JobState | None) -> dict[str, Any]:
    """Message sent to subscribers when a job changes state."""
    return {
        "event": "job_update",
        "job_id": job.id,
        "subject_ref": job.subject_ref,
        "provider_type": job.provider_type,
        "state": job.state,
        "previous_state": previous.value if previous is not None else None,
        "progress_percent": job.progress_percent,
        "error_message": job.error_message,
        "asset_id": job.asset_id,
    }


class JobProgressNotifier:
    """Job store listener that forwards state changes to WebSocket subscribers."""

    def __init__(self, manager: WebSocketProgressManager, scheduler: Scheduler) -> None:
        self.manager = manager
        self.scheduler = scheduler

    def __call__(self, job: GenerationJob, previous: JobState | None) -> None:
        if not self.manager.subscriber_count(job.id):
            return
        try:
            self.scheduler.spawn(
                self.manager.send_progress_update(job.id, job_update_payload(job, previous)),
                name=f"notify-{job.id}",
            )
        except RuntimeError:
            # No running event loop (synchronous caller); nothing to deliver to
            logger.debug(f"No event loop to deliver update for job {job.id}")


# Shared manager instance
websocket_manager = WebSocketProgressManager()
