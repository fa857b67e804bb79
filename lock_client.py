# lock_client.py
"""Admin-side view of the editing channel.

Keeps the lock map a session last heard about and decides whether an edit
form may open. Transport-free: outgoing frames go through the `send`
callable, incoming frames are fed to `apply`.
"""
import logging
from typing import Any, Callable, Dict, Optional

from locks import EDITING_CONFLICT, INITIAL_LOCKS, START_EDITING, STOP_EDITING, envelope

logger = logging.getLogger(__name__)


class LockStateView:
    def __init__(self, user_id: str, send: Callable[[Dict[str, Any]], Any]):
        self.user_id = str(user_id)
        self.locks: Dict[str, Dict[str, str]] = {}
        self.editing: Optional[str] = None
        self.notice: Optional[str] = None
        self._send = send

    def apply(self, message: Dict[str, Any]) -> None:
        type_ = message.get("type")
        payload = message.get("payload") or {}
        if type_ == INITIAL_LOCKS:
            self.locks = {str(aid): dict(lock) for aid, lock in payload.items()}
        elif type_ == START_EDITING:
            self.locks[str(payload["articleId"])] = dict(payload)
        elif type_ == STOP_EDITING:
            self.locks.pop(str(payload["articleId"]), None)
        elif type_ == EDITING_CONFLICT:
            article_id = str(payload["articleId"])
            lock = dict(payload["lock"])
            self.locks[article_id] = lock
            if self.editing == article_id:
                # the server gave the article to someone else first
                self.editing = None
                self.notice = f"This article is being edited by {lock['userName']}."
        else:
            logger.debug("Ignoring message of type %r", type_)

    def locked_by_other(self, article_id) -> Optional[Dict[str, str]]:
        lock = self.locks.get(str(article_id))
        if lock and str(lock.get("userId")) != self.user_id:
            return lock
        return None

    def open_editor(self, article_id) -> bool:
        """Enter edit mode unless someone else is known to hold the article."""
        article_id = str(article_id)
        lock = self.locked_by_other(article_id)
        if lock:
            self.notice = f"This article is being edited by {lock['userName']}."
            return False
        self.notice = None
        self.editing = article_id
        self._send(envelope(START_EDITING, {"articleId": article_id}))
        return True

    def cancel_editor(self) -> None:
        if self.editing is None:
            return
        article_id, self.editing = self.editing, None
        self._send(envelope(STOP_EDITING, {"articleId": article_id}))

    def save_editor(self, save: Callable[[], Any]) -> Any:
        """Run `save`, then release. A failing save keeps the form and the lock."""
        if self.editing is None:
            raise RuntimeError("no article is open for editing")
        result = save()
        self.cancel_editor()
        return result
