"""Stub generation provider with scripted, deterministic results."""

from __future__ import annotations

import asyncio
import hashlib
import itertools
import json
import tempfile
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any, Union

from shared.enums import JobState, ProviderType
from shared.exceptions import TerminalProviderError, ValidationError
from shared.models import ProviderStatus
from shared.utils import ensure_directory

from .base import GenerationProvider

ScriptStep = Union[ProviderStatus, Exception]


class StubGenerationProvider(GenerationProvider):
    """Replay a script of statuses per submitted job without external services.

    Each submission gets its own copy of the script. ``get_status`` walks it one
    step per call and keeps returning the last step once exhausted. Steps that
    are exceptions are raised instead of returned. Without a script the job
    reports PROCESSING twice and then COMPLETED with a ``file://`` result whose
    bytes are derived from the request payload.
    """

    provider_type = ProviderType.STUB

    def __init__(
        self,
        script: Sequence[ScriptStep] | None = None,
        script_factory: Callable[[dict[str, Any]], Sequence[ScriptStep]] | None = None,
        submit_delay: float = 0.0,
        submit_error: Exception | None = None,
        result_dir: str | Path | None = None,
        cancel_supported: bool = True,
    ) -> None:
        self.script = list(script) if script is not None else None
        self.script_factory = script_factory
        self.submit_delay = submit_delay
        self.submit_error = submit_error
        self.cancel_supported = cancel_supported
        self.result_dir = Path(result_dir or Path(tempfile.gettempdir()) / "slidecast-stub-results")
        self._counter = itertools.count(1)
        self._scripts: dict[str, list[ScriptStep]] = {}
        self._positions: dict[str, int] = {}

        self.submitted: list[dict[str, Any]] = []
        self.status_calls: list[str] = []
        self.cancelled: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    def validate_request(self, payload: dict[str, Any]) -> None:
        if payload.get("invalid"):
            raise ValidationError("Stub request marked invalid")

    async def submit(self, payload: dict[str, Any]) -> str:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.submit_delay:
                await asyncio.sleep(self.submit_delay)
            if self.submit_error is not None:
                raise self.submit_error
            handle = f"stub-{next(self._counter)}"
            self._scripts[handle] = list(self._build_script(handle, payload))
            self._positions[handle] = 0
            self.submitted.append(dict(payload))
            return handle
        finally:
            self.in_flight -= 1

    def _build_script(self, handle: str, payload: dict[str, Any]) -> Sequence[ScriptStep]:
        if self.script_factory is not None:
            return self.script_factory(payload)
        if self.script is not None:
            return self.script
        result = self.write_result(handle, payload)
        return [
            ProviderStatus(state=JobState.PROCESSING, progress_percent=30),
            ProviderStatus(state=JobState.PROCESSING, progress_percent=70),
            ProviderStatus(state=JobState.COMPLETED, result_ref=result.as_uri(), progress_percent=100),
        ]

    def write_result(self, handle: str, payload: dict[str, Any]) -> Path:
        """Write deterministic bytes for a handle and return their path."""
        ensure_directory(str(self.result_dir))
        seed = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
        content = hashlib.sha256(seed).digest() * 64
        path = self.result_dir / f"{handle}{self.file_extension}"
        path.write_bytes(content)
        return path

    async def get_status(self, handle: str) -> ProviderStatus:
        self.status_calls.append(handle)
        script = self._scripts.get(handle)
        if script is None:
            raise TerminalProviderError(f"Unknown stub job {handle}", provider=self.name)
        if not script:
            return ProviderStatus(state=JobState.PROCESSING)

        position = self._positions[handle]
        step = script[min(position, len(script) - 1)]
        self._positions[handle] = position + 1
        if isinstance(step, Exception):
            raise step
        return step

    async def cancel(self, handle: str) -> bool:
        self.cancelled.append(handle)
        return self.cancel_supported

    def parse_webhook(self, payload: dict[str, Any]) -> tuple[str, ProviderStatus]:
        handle = payload.get("handle")
        if not handle:
            raise ValidationError("Stub webhook is missing handle")
        status = ProviderStatus.model_validate(payload.get("status") or {})
        return str(handle), status
