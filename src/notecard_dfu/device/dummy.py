import logging
import contextlib
from typing import Any, Callable, Dict, List, Union

Reply = Union[Dict[str, Any], Exception, Callable[[Dict[str, Any]], Dict[str, Any]]]

class ScriptedConnection:
    """
    A stand-in for NotecardConnection that answers from per-request scripts.

    ``script(name, *replies)`` queues replies for a request name; each reply
    is a response dict, an exception to raise, or a callable taking the
    request. When a queue runs dry the ``default(name, reply)`` is used, and
    failing that an empty response.
    """

    def __init__(self):
        self.log = logging.getLogger("ScriptedConnection")
        self.requests: List[Dict[str, Any]] = []
        self.raw: List[bytes] = []
        self.scripts: Dict[str, List[Reply]] = {}
        self.defaults: Dict[str, Reply] = {}
        self.segment_max_len = 250
        self.segment_delay_ms = 250
        self.settings_history: List[tuple] = []

    def script(self, name: str, *replies: Reply) -> "ScriptedConnection":
        self.scripts.setdefault(name, []).extend(replies)
        return self

    def default(self, name: str, reply: Reply) -> "ScriptedConnection":
        self.defaults[name] = reply
        return self

    @contextlib.contextmanager
    def link_settings(self, max_len: int, delay_ms: int):
        saved = (self.segment_max_len, self.segment_delay_ms)
        self.segment_max_len, self.segment_delay_ms = max_len, delay_ms
        self.settings_history.append((max_len, delay_ms))
        try:
            yield self
        finally:
            self.segment_max_len, self.segment_delay_ms = saved

    def transaction(self, req: Dict[str, Any]) -> Dict[str, Any]:
        self.requests.append(dict(req))
        name = req.get("req", "")
        queue = self.scripts.get(name)
        reply = queue.pop(0) if queue else self.defaults.get(name, {})
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(req)
        return dict(reply)

    def send_bytes(self, data: bytes) -> None:
        self.raw.append(bytes(data))

    # --- Test Helper Methods --- #

    def sent(self, name: str) -> List[Dict[str, Any]]:
        """Requests sent with the given name, in order."""
        return [r for r in self.requests if r.get("req") == name]

    def names(self) -> List[str]:
        return [r.get("req", "") for r in self.requests]
