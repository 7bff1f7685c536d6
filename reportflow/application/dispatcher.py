"""Job dispatch: job id, seed progress record, one worker request."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable
from uuid import uuid4

from reportflow.core.config import JOB_KINDS, Settings
from reportflow.core.errors import DispatchError
from reportflow.core.schema import DispatchPayload
from reportflow.domain import ProgressRecord, utcnow
from reportflow.infrastructure import ProgressStore, WorkerClient

logger = logging.getLogger(__name__)

SEED_PROGRESS = 5
SEED_MESSAGE = "Starting…"

ACTIONS = {
    "file_analysis": "analyze_files",
    "image_analysis": "analyze_images",
    "report_generation": "generate_report",
}


def build_seed_record(job_id: str, *, report_id: str | None = None, now: datetime | None = None) -> ProgressRecord:
    return ProgressRecord(
        job_id=job_id,
        status="generating",
        message=SEED_MESSAGE,
        progress=SEED_PROGRESS,
        created_at=now or utcnow(),
        report_id=report_id,
    )


@dataclass(slots=True)
class DispatchTarget:
    """Entities a job works on."""

    project_id: str
    user_id: str
    name: str = ""
    report_id: str | None = None
    file_ids: list[str] = field(default_factory=list)


class JobDispatcher:
    def __init__(
        self,
        store: ProgressStore,
        worker: WorkerClient,
        settings: Settings,
        *,
        id_factory: Callable[[], str] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._worker = worker
        self._settings = settings
        self._id_factory = id_factory or (lambda: str(uuid4()))
        self._clock = clock

    def is_test_target(self, target: DispatchTarget) -> bool:
        """Test mode needs a development environment and "test" in the target name."""

        return self._settings.is_development and "test" in target.name.lower()

    async def dispatch(
        self,
        kind: str,
        target: DispatchTarget,
        context: dict[str, Any] | None = None,
    ) -> str:
        """Start a job on the external worker and return its id.

        The job id and seed record exist before the request is sent so a
        monitor can subscribe without missing the worker's first event.
        Raises :class:`DispatchError` when the request itself fails.
        """

        if kind not in JOB_KINDS:
            raise DispatchError(f"Unknown job kind: {kind}", kind=kind)

        is_test = self.is_test_target(target)
        try:
            url = self._settings.webhook_url(kind, is_test=is_test)
        except KeyError as exc:
            raise DispatchError(str(exc), kind=kind) from exc

        job_id = self._id_factory()
        now = self._clock()
        try:
            await self._store.append(build_seed_record(job_id, report_id=target.report_id, now=now))
        except Exception:  # noqa: BLE001 - the monitor re-seeds a missing record
            logger.warning(f"Could not write seed progress record for job {job_id}", exc_info=True)

        payload = DispatchPayload(
            action=ACTIONS[kind],
            job=job_id,
            callback_url=self._settings.callback_url(job_id),
            project_id=target.project_id,
            user_id=target.user_id,
            report_id=target.report_id,
            file_ids=list(target.file_ids),
            is_test=is_test,
            timestamp=now,
            context=dict(context or {}),
        )
        logger.info(f"Dispatching {kind} job {job_id} for project {target.project_id} (test mode: {is_test})")
        await self._worker.trigger(url, payload, kind=kind)
        return job_id
