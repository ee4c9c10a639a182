"""Read-only collaborators: the clock and per-provider consultation length."""

from __future__ import annotations

import logging
from datetime import datetime

import config
from store import QueueStore

logger = logging.getLogger(__name__)


class Clock:
    """Supplies "now" in the clinic's local wall-clock time."""

    def now(self) -> datetime:
        return datetime.now()


class ConsultationConfig:
    """Average consultation minutes per provider, from ``ProviderSettings``."""

    def __init__(self, store: QueueStore, default_minutes: int = config.DEFAULT_CONSULTATION_MINUTES) -> None:
        self.store = store
        self.default_minutes = default_minutes

    def get_average_consultation_minutes(self, provider_id: str) -> int:
        settings = self.store.get_provider_settings(provider_id)
        if settings is None or not settings.average_consultation_minutes:
            return self.default_minutes
        if settings.average_consultation_minutes < 0:
            logger.warning(
                "Provider %s has a negative consultation length, using %s",
                provider_id,
                self.default_minutes,
            )
            return self.default_minutes
        return settings.average_consultation_minutes
