from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import timedelta

DEVELOPMENT_ENVIRONMENTS = {"development", "dev", "test"}

JOB_KINDS = ("file_analysis", "image_analysis", "report_generation")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, float(default)))


@dataclass(slots=True)
class WebhookTarget:
    """Worker endpoints for one job kind."""

    url: str
    test_url: str | None = None

    def resolve(self, is_test: bool) -> str:
        if is_test and self.test_url:
            return self.test_url
        return self.url


@dataclass(slots=True)
class Settings:
    environment: str = "production"
    callback_base_url: str = "http://localhost:8000/api"
    webhooks: dict[str, WebhookTarget] = field(default_factory=dict)
    dispatch_timeout: float = 30.0
    stale_after: timedelta = timedelta(minutes=15)
    poll_interval: float = 2.0
    poll_attempt_budget: int = 30
    resubscribe_delay: float = 2.0
    max_resubscribe_attempts: int = 5
    auto_advance_delay: float = 1.5

    @property
    def is_development(self) -> bool:
        return self.environment.lower() in DEVELOPMENT_ENVIRONMENTS

    def webhook_url(self, kind: str, *, is_test: bool = False) -> str:
        target = self.webhooks.get(kind)
        if target is None:
            raise KeyError(f"no worker endpoint configured for job kind {kind!r}")
        return target.resolve(is_test)

    def callback_url(self, job_id: str) -> str:
        return f"{self.callback_base_url.rstrip('/')}/progress/{job_id}"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from ``REPORTFLOW_*`` environment variables."""

        webhooks: dict[str, WebhookTarget] = {}
        for kind in JOB_KINDS:
            prefix = f"REPORTFLOW_{kind.upper()}"
            url = os.getenv(f"{prefix}_WEBHOOK_URL") or f"http://localhost:5678/webhook/{kind.replace('_', '-')}"
            test_url = os.getenv(f"{prefix}_TEST_WEBHOOK_URL") or None
            webhooks[kind] = WebhookTarget(url=url, test_url=test_url)

        return cls(
            environment=os.getenv("REPORTFLOW_ENV") or "production",
            callback_base_url=os.getenv("REPORTFLOW_CALLBACK_BASE_URL") or "http://localhost:8000/api",
            webhooks=webhooks,
            dispatch_timeout=_env_float("REPORTFLOW_DISPATCH_TIMEOUT", 30.0),
            stale_after=timedelta(minutes=_env_float("REPORTFLOW_STALE_AFTER_MINUTES", 15.0)),
            poll_interval=_env_float("REPORTFLOW_POLL_INTERVAL", 2.0),
            poll_attempt_budget=_env_int("REPORTFLOW_POLL_ATTEMPTS", 30),
            resubscribe_delay=_env_float("REPORTFLOW_RESUBSCRIBE_DELAY", 2.0),
            max_resubscribe_attempts=_env_int("REPORTFLOW_RESUBSCRIBE_ATTEMPTS", 5),
            auto_advance_delay=_env_float("REPORTFLOW_AUTO_ADVANCE_DELAY", 1.5),
        )
