"""Registry of pipeline sessions.

At most one run is active per session id. Finished sessions move to a bounded
history so their status stays queryable without the registry growing forever.
"""

from __future__ import annotations

from collections import OrderedDict
from typing import Dict, Optional

import structlog

from api.schemas.pipeline_state import PipelineRequest, Session
from libs.common.errors import SessionConflictError

logger = structlog.get_logger(__name__)


class SessionRegistry:
    def __init__(self, history_size: int = 500):
        self.history_size = history_size
        self._active: Dict[str, Session] = {}
        self._finished: "OrderedDict[str, Session]" = OrderedDict()

    def start(self, request: PipelineRequest) -> Session:
        """Register a new run.

        Raises:
            SessionConflictError: a run is already active for this session id.
        """
        if request.session_id in self._active:
            raise SessionConflictError(f"A pipeline run is already active for session {request.session_id}")
        session = Session(request=request)
        self._active[session.session_id] = session
        self._finished.pop(session.session_id, None)
        logger.info("Session started", session_id=session.session_id, active_sessions=len(self._active))
        return session

    def finish(self, session: Session) -> None:
        self._active.pop(session.session_id, None)
        self._finished[session.session_id] = session
        self._finished.move_to_end(session.session_id)
        while len(self._finished) > self.history_size:
            self._finished.popitem(last=False)

    def get(self, session_id: str) -> Optional[Session]:
        return self._active.get(session_id) or self._finished.get(session_id)

    def is_active(self, session_id: str) -> bool:
        return session_id in self._active

    def active_count(self) -> int:
        return len(self._active)
