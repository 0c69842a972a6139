#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Download progress events and the single-slot channel that carries them.

Provisioners publish from worker threads; the orchestrator clears the slot on
every phase transition so a consumer never renders progress left over from a
previous candidate.
"""

import threading
from typing import Callable, Optional

from pydantic import BaseModel, ConfigDict, Field


class DownloadProgress(BaseModel):
    """A single progress sample for an in-flight download."""
    model_config = ConfigDict(frozen=True)

    written_bytes: int = Field(..., description="Bytes written to disk so far")
    total_bytes: Optional[int] = Field(None, description="Expected size, when the server reports it")
    label: str = Field(..., description="Human-readable name of the artifact")
    speed_bytes_per_sec: Optional[float] = Field(None, description="Recent transfer rate")

    @property
    def fraction(self) -> Optional[float]:
        """Completed fraction in [0, 1], or None when the total is unknown."""
        if not self.total_bytes:
            return None
        return min(1.0, self.written_bytes / self.total_bytes)


ProgressListener = Callable[[Optional[DownloadProgress]], None]


class ProgressChannel:
    """
    Bounded single-slot channel with at most one subscriber.

    publish() overwrites the slot, so a slow consumer only ever sees the
    newest sample. clear() empties the slot and notifies the subscriber with
    None.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._latest: Optional[DownloadProgress] = None
        self._listener: Optional[ProgressListener] = None

    def subscribe(self, listener: ProgressListener) -> None:
        with self._lock:
            if self._listener is not None:
                raise RuntimeError("Progress channel already has a subscriber")
            self._listener = listener

    def unsubscribe(self) -> None:
        with self._lock:
            self._listener = None

    def publish(self, progress: DownloadProgress) -> None:
        with self._lock:
            self._latest = progress
            listener = self._listener
        if listener is not None:
            listener(progress)

    def clear(self) -> None:
        with self._lock:
            had_value = self._latest is not None
            self._latest = None
            listener = self._listener
        if listener is not None and had_value:
            listener(None)

    def latest(self) -> Optional[DownloadProgress]:
        with self._lock:
            return self._latest
