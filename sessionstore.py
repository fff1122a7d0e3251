"""Server-side storage of wizard state, keyed by the session id kept in the signed cookie."""

import json
import os
import re
import threading
import time
from typing import Dict, Optional, Tuple

from errors import ConfigurationError
from utils_crt import atomic_write
from workflow import SessionState

_SID_RE = re.compile(r"^[A-Za-z0-9_-]{16,128}$")


class SessionStore:
    """
    load(sid) -> SessionState, save(sid, state), delete(sid).

    With `max_age` set, prune() drops states not saved for that many seconds
    and returns how many went.
    """

    def __init__(self, max_age: Optional[float] = None):
        self.max_age = max_age

    def load(self, sid: str) -> SessionState:
        raise NotImplementedError

    def save(self, sid: str, state: SessionState) -> None:
        raise NotImplementedError

    def delete(self, sid: str) -> None:
        raise NotImplementedError

    def prune(self, now: Optional[float] = None) -> int:
        raise NotImplementedError


class MemorySessionStore(SessionStore):

    def __init__(self, max_age: Optional[float] = None):
        super().__init__(max_age)
        self._data: Dict[str, Tuple[float, dict]] = {}
        self._lock = threading.Lock()

    def load(self, sid):
        with self._lock:
            entry = self._data.get(sid)
        return SessionState.from_dict(entry[1] if entry else None)

    def save(self, sid, state):
        with self._lock:
            self._data[sid] = (time.time(), state.to_dict())

    def delete(self, sid):
        with self._lock:
            self._data.pop(sid, None)

    def prune(self, now=None):
        if not self.max_age:
            return 0
        cutoff = (now if now is not None else time.time()) - self.max_age
        with self._lock:
            stale = [sid for sid, (saved, _) in self._data.items() if saved < cutoff]
            for sid in stale:
                del self._data[sid]
        return len(stale)


class FileSessionStore(SessionStore):
    """One JSON file per session id under `directory`; the file mtime is the last save."""

    def __init__(self, directory: str, max_age: Optional[float] = None):
        super().__init__(max_age)
        self.directory = directory
        os.makedirs(directory, mode=0o700, exist_ok=True)

    def _path(self, sid: str) -> str:
        if not sid or not _SID_RE.match(sid):
            raise ValueError("Invalid session id")
        return os.path.join(self.directory, f"{sid}.json")

    def load(self, sid):
        path = self._path(sid)
        try:
            with open(path, "r", encoding="utf-8") as f:
                return SessionState.from_dict(json.load(f))
        except FileNotFoundError:
            return SessionState()
        except (OSError, ValueError, KeyError) as e:
            print(f"[SESSION] Discarding unreadable state {os.path.basename(path)}: {e}")
            return SessionState()

    def save(self, sid, state):
        try:
            atomic_write(self._path(sid), json.dumps(state.to_dict()).encode("utf-8"), mode=0o600)
        except OSError as e:
            raise ConfigurationError(f"Could not persist session state: {e}") from e

    def delete(self, sid):
        try:
            os.remove(self._path(sid))
        except FileNotFoundError:
            pass

    def prune(self, now=None):
        if not self.max_age:
            return 0
        cutoff = (now if now is not None else time.time()) - self.max_age
        removed = 0
        with os.scandir(self.directory) as it:
            for entry in it:
                if not entry.name.endswith(".json") or not _SID_RE.match(entry.name[:-5]):
                    continue
                try:
                    if entry.stat().st_mtime < cutoff:
                        os.remove(entry.path)
                        removed += 1
                except FileNotFoundError:
                    # deleted by a concurrent logout
                    continue
        if removed:
            print(f"[SESSION] Pruned {removed} idle session state file(s)")
        return removed
