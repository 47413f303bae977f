"""Wires registry, dispatcher, executor and publisher into one process-wide unit."""
from __future__ import annotations

import logging
from typing import Optional

from ..util.settings import Settings
from .dispatcher import Dispatcher
from .executor import TaskExecutor
from .progress import ProgressPublisher
from .registry import ConnectionReaper, ConnectionRegistry

logger = logging.getLogger(__name__)


class Hub:
    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or Settings()
        self.settings.validate()
        self.registry = ConnectionRegistry(self.settings.connection_queue_size)
        self.dispatcher = Dispatcher(self.registry, send_timeout=self.settings.send_timeout)
        self.executor = TaskExecutor(
            self.settings.core_workers,
            self.settings.max_workers,
            self.settings.queue_capacity,
            overflow=self.settings.overflow_policy,
            keep_alive=self.settings.worker_keep_alive,
            result_ttl=self.settings.result_ttl,
            max_retained=self.settings.max_retained_tasks,
        )
        self.publisher = ProgressPublisher(
            self.executor,
            self.registry,
            self.dispatcher,
            stream_timeout=self.settings.progress_timeout,
        )
        self._reaper: Optional[ConnectionReaper] = None

    def start(self) -> None:
        self.executor.start()
        if self.settings.reaper_interval > 0:
            self._reaper = ConnectionReaper(self.registry, self.settings.reaper_interval)
            self._reaper.start()
        logger.info("Hub started")

    def stop(self, timeout: float = 5.0) -> None:
        if self._reaper is not None:
            self._reaper.stop()
            self._reaper = None
        closed = self.registry.close_all()
        self.executor.shutdown(wait=False, timeout=timeout)
        logger.info("Hub stopped (%d connection(s) closed)", closed)
