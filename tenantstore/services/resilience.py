from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from tenantstore.core.config import get_settings
from tenantstore.core.errors import ConflictError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConflictRetryPolicy:
    max_attempts: int
    backoff_ms: int


def default_conflict_policy() -> ConflictRetryPolicy:
    settings = get_settings()
    return ConflictRetryPolicy(
        max_attempts=settings.conflict_retry_max_attempts,
        backoff_ms=settings.conflict_retry_backoff_ms,
    )


async def retry_on_conflict(
    func: Callable[[], Awaitable[Any]],
    *,
    policy: ConflictRetryPolicy | None = None,
) -> Any:
    # Re-run a read-modify-write on resourceVersion conflicts with jittered backoff.
    policy = policy or default_conflict_policy()
    attempt = 1
    while True:
        try:
            return await func()
        except ConflictError as exc:
            if attempt >= max(policy.max_attempts, 1):
                raise
            logger.info("object_update_conflict attempt=%s error=%s", attempt, exc)
            jitter = random.uniform(0.5, 1.5)
            await asyncio.sleep((policy.backoff_ms / 1000.0) * (2 ** (attempt - 1)) * jitter)
            attempt += 1
