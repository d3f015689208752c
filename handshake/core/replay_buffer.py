"""Bounded replay buffer of rendered server-sent events."""

from __future__ import annotations

import hashlib
import json
import time
from collections.abc import Callable
from uuid import UUID

from cachetools import TTLCache


def render_event(applicant_id: UUID, seq: int) -> str:
    """Render event `seq` as an SSE frame; identical for every call."""
    digest = hashlib.sha256(f"{applicant_id}:{seq}".encode("utf-8")).hexdigest()
    data = json.dumps(
        {"seq": seq, "applicantId": str(applicant_id), "kind": "tick", "digest": digest[:16]},
        separators=(",", ":"),
    )
    return f"id: {seq}\nevent: tick\ndata: {data}\n\n"


class ReplayBuffer:
    """Recently emitted frames kept past the reconnection budget.

    Frames are pure functions of (applicant, seq), so a miss regenerates the
    same bytes; the buffer only saves the rendering work on reconnect bursts.
    """

    def __init__(
        self,
        maxsize: int,
        ttl_seconds: float,
        timer: Callable[[], float] | None = None,
    ) -> None:
        self._frames: TTLCache[tuple[UUID, int], str] = TTLCache(
            maxsize=maxsize,
            ttl=ttl_seconds,
            timer=timer or time.monotonic,
        )
        self.hits = 0
        self.misses = 0

    def frame(self, applicant_id: UUID, seq: int) -> str:
        """Return the frame for `seq`, from the buffer when present."""
        key = (applicant_id, seq)
        cached = self._frames.get(key)
        if cached is not None:
            self.hits += 1
            return cached
        self.misses += 1
        rendered = render_event(applicant_id, seq)
        self._frames[key] = rendered
        return rendered

    def discard(self, applicant_id: UUID) -> None:
        """Drop every buffered frame of the applicant."""
        for key in [key for key in list(self._frames.keys()) if key[0] == applicant_id]:
            self._frames.pop(key, None)
