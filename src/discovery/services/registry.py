from __future__ import annotations

import time
import uuid
from typing import Dict, Optional

from discovery.services.session import SearchSession


class SessionRegistry:
    """Simple in-memory registry of search sessions with idle expiry."""

    def __init__(self, ttl_sec: int = 3600) -> None:
        self._sessions: Dict[str, SearchSession] = {}
        self._last_access: Dict[str, float] = {}
        self.ttl_sec = ttl_sec

    def add(self, session: SearchSession) -> str:
        self._cleanup()
        session_id = uuid.uuid4().hex
        self._sessions[session_id] = session
        self._last_access[session_id] = time.time()
        return session_id

    def get(self, session_id: str) -> Optional[SearchSession]:
        self._cleanup()
        if not session_id or session_id not in self._sessions:
            return None
        self._last_access[session_id] = time.time()
        return self._sessions[session_id]

    def drop(self, session_id: str) -> bool:
        """Forget a session; True if it existed."""
        self._last_access.pop(session_id, None)
        return self._sessions.pop(session_id, None) is not None

    def __len__(self) -> int:
        return len(self._sessions)

    def _cleanup(self) -> None:
        """Remove expired sessions."""
        now = time.time()
        expired = [
            sid for sid, last in self._last_access.items()
            if now - last > self.ttl_sec
        ]
        for sid in expired:
            del self._sessions[sid]
            del self._last_access[sid]
