from typing import Any, Dict, Set


class ConnectionManager:
    """Live chat sessions per user; one user may have several tabs open.

    Only the last session of a user to go away publishes them offline.
    """

    def __init__(self) -> None:
        self.sessions: Dict[str, Set[Any]] = {}

    def add(self, user_id: str, session: Any) -> None:
        self.sessions.setdefault(user_id, set()).add(session)

    def remove(self, user_id: str, session: Any) -> bool:
        """Forget ``session``; returns True when it was the user's last one."""
        open_sessions = self.sessions.get(user_id)
        if open_sessions is None:
            return True
        open_sessions.discard(session)
        if open_sessions:
            return False
        del self.sessions[user_id]
        return True

    def is_connected(self, user_id: str) -> bool:
        return bool(self.sessions.get(user_id))

    def count(self, user_id: str) -> int:
        return len(self.sessions.get(user_id, ()))
