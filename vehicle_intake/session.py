from __future__ import annotations

import logging
import re
import threading
from collections import OrderedDict
from typing import Optional

from vehicle_intake.sequencer import StepSequencer
from vehicle_intake.settings import settings
from vehicle_intake.state_store import RecordStateStore, session_state_path

logger = logging.getLogger(__name__)

DEFAULT_SESSION_ID = "default"
SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class SessionRegistry:
    """
    One sequencer per session id, created lazily.

    Live uploads and preview tokens exist only inside these objects; the
    state file on disk restores everything else after a restart. At most
    `max_sessions` stay in memory; the least recently used idle one is
    dropped first and its uploads are released.
    """

    def __init__(self, state_dir: Optional[str] = None, max_sessions: Optional[int] = None) -> None:
        self.state_dir = state_dir
        self.max_sessions = max_sessions or settings.max_sessions
        self._lock = threading.Lock()
        self._sessions: "OrderedDict[str, StepSequencer]" = OrderedDict()

    def get(self, session_id: str) -> StepSequencer:
        if not SESSION_ID_PATTERN.match(session_id or ""):
            raise ValueError(f"Invalid session id: {session_id!r}")
        with self._lock:
            sequencer = self._sessions.get(session_id)
            if sequencer is None:
                path = session_state_path(self.state_dir or settings.state_dir, session_id)
                sequencer = StepSequencer(RecordStateStore(path))
                self._sessions[session_id] = sequencer
                logger.info("Opened session %s (step %s)", session_id, sequencer.current.value)
            self._sessions.move_to_end(session_id)
            self._evict(keep=session_id)
            return sequencer

    def _evict(self, keep: str) -> None:
        # Sessions with a call in flight are skipped; the limit may be exceeded until they finish.
        for session_id in list(self._sessions):
            if len(self._sessions) <= self.max_sessions:
                return
            sequencer = self._sessions[session_id]
            if session_id == keep or sequencer.scanning:
                continue
            del self._sessions[session_id]
            released = sequencer.previews.release_all()
            logger.info("Evicted idle session %s (%s previews released)", session_id, released)

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def clear(self) -> None:
        with self._lock:
            for sequencer in self._sessions.values():
                sequencer.previews.release_all()
            self._sessions.clear()


sessions = SessionRegistry()
