"""MCP session broker.

Correlates the ``mcp-session-id`` header with a live protocol context. Each
session owns one Streamable HTTP transport and one run of the MCP server on
it; the broker owns the session table.

Lifecycle per session: absent -> active -> active (renewed) -> expired/closed.

- A call without a session id, or with one the broker does not know, opens a
  new session (bounded by ``max_sessions``; the table never evicts to make
  room).
- A call with a known id is dispatched into that session's context and
  pushes its expiry forward by ``idle_timeout``.
- DELETE, the context closing on its own, or the sweeper removes the entry.

The context signals closure exactly once through ``Session.closed``; the
broker's supervisor task awaits ``serve()`` and drops the entry in the same
step, so cleanup never depends on garbage collection.
"""

import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol

import anyio
from anyio.abc import TaskGroup, TaskStatus
from mcp.server.streamable_http import StreamableHTTPServerTransport
from starlette.responses import JSONResponse

from admission import MCP_LIMIT, check_admission, client_ip
from errors import CapacityExceeded, ServiceError, SessionNotFound

logger = logging.getLogger(__name__)

SESSION_HEADER = "mcp-session-id"
_SESSION_HEADER_BYTES = SESSION_HEADER.encode("latin-1")


class SessionContext(Protocol):
    """A protocol-handling context bound to one session id."""

    session_id: str

    async def serve(self, *, task_status: TaskStatus = anyio.TASK_STATUS_IGNORED) -> None:
        """Run until the context is closed. Must call ``task_status.started()`` once ready."""

    async def handle_request(self, scope, receive, send) -> None:
        ...

    async def terminate(self) -> None:
        ...


class McpSessionContext:
    """One Streamable HTTP transport with the MCP server running on it."""

    def __init__(self, session_id: str, mcp_server, json_response: bool = False):
        self.session_id = session_id
        self._server = mcp_server._mcp_server
        self._transport = StreamableHTTPServerTransport(
            mcp_session_id=session_id,
            is_json_response_enabled=json_response,
        )

    async def serve(self, *, task_status: TaskStatus = anyio.TASK_STATUS_IGNORED) -> None:
        async with self._transport.connect() as (read_stream, write_stream):
            task_status.started()
            await self._server.run(
                read_stream,
                write_stream,
                self._server.create_initialization_options(),
                stateless=False,
            )

    async def handle_request(self, scope, receive, send) -> None:
        await self._transport.handle_request(scope, receive, send)

    async def terminate(self) -> None:
        if not self._transport.is_terminated:
            await self._transport.terminate()


def mcp_context_factory(mcp_server, json_response: bool = False) -> Callable[[str], SessionContext]:
    def factory(session_id: str) -> SessionContext:
        return McpSessionContext(session_id, mcp_server, json_response=json_response)

    return factory


@dataclass
class Session:
    session_id: str
    context: SessionContext
    expires_at: float
    lock: anyio.Lock = field(default_factory=anyio.Lock)
    closed: anyio.Event = field(default_factory=anyio.Event)


class SessionBroker:
    """Session table bounded by ``max_sessions`` with an idle timeout."""

    def __init__(
        self,
        context_factory: Callable[[str], SessionContext],
        max_sessions: int = 200,
        idle_timeout: float = 30 * 60,
        clock: Callable[[], float] = time.time,
    ):
        self.context_factory = context_factory
        self.max_sessions = max_sessions
        self.idle_timeout = idle_timeout
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._task_group: Optional[TaskGroup] = None

    # ============== Lifecycle ==============

    @asynccontextmanager
    async def run(self):
        """Own the task group that session contexts run in. Closes every session on exit."""
        if self._task_group is not None:
            raise RuntimeError("SessionBroker.run() is already active")

        async with anyio.create_task_group() as tg:
            self._task_group = tg
            logger.info(f"[SESSION] Broker started (max {self.max_sessions} sessions)")
            try:
                yield self
            finally:
                with anyio.CancelScope(shield=True):
                    for session_id in list(self._sessions):
                        await self.close(session_id)
                tg.cancel_scope.cancel()
                self._task_group = None
                logger.info("[SESSION] Broker stopped")

    # ============== Table operations ==============

    def _expired(self, session: Session, now: float = None) -> bool:
        now = self._clock() if now is None else now
        return session.expires_at <= now

    @property
    def active_count(self) -> int:
        now = self._clock()
        return sum(1 for s in self._sessions.values() if not self._expired(s, now))

    def get(self, session_id: Optional[str]) -> Optional[Session]:
        """Return a live session. Expired entries are absent even before the sweeper runs."""
        if not session_id:
            return None
        session = self._sessions.get(session_id)
        if session is None or self._expired(session):
            return None
        return session

    def touch(self, session: Session) -> None:
        session.expires_at = self._clock() + self.idle_timeout

    async def open(self) -> Session:
        """Create a session and start its context."""
        if self._task_group is None:
            raise RuntimeError("SessionBroker.run() must be entered before opening sessions")
        # Expired sessions still hold a running context until closed.
        await self.sweep()
        if len(self._sessions) >= self.max_sessions:
            logger.warning(f"[SESSION] Session table full ({self.max_sessions}), refusing new session")
            raise CapacityExceeded("Too many active sessions. Try again later.")

        session_id = uuid.uuid4().hex
        while session_id in self._sessions:
            session_id = uuid.uuid4().hex

        session = Session(
            session_id=session_id,
            context=self.context_factory(session_id),
            expires_at=self._clock() + self.idle_timeout,
        )
        self._sessions[session_id] = session
        try:
            await self._task_group.start(self._supervise, session)
        except BaseException:
            self._sessions.pop(session_id, None)
            raise
        logger.info(f"[SESSION] Opened {session_id} ({len(self._sessions)}/{self.max_sessions})")
        return session

    async def _supervise(self, session: Session, *, task_status: TaskStatus = anyio.TASK_STATUS_IGNORED):
        try:
            await session.context.serve(task_status=task_status)
        except Exception:
            logger.exception(f"[SESSION] Context for {session.session_id} crashed")
        finally:
            session.closed.set()
            if self._sessions.get(session.session_id) is session:
                del self._sessions[session.session_id]
                logger.info(f"[SESSION] {session.session_id} closed by its context")

    async def close(self, session_id: str) -> bool:
        """Remove a session immediately and terminate its context."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        try:
            await session.context.terminate()
        except Exception:
            logger.exception(f"[SESSION] Failed to terminate {session_id}")
        logger.info(f"[SESSION] Closed {session_id}")
        return True

    async def sweep(self) -> int:
        now = self._clock()
        stale = [sid for sid, s in self._sessions.items() if self._expired(s, now)]
        for session_id in stale:
            await self.close(session_id)
        return len(stale)

    # ============== Dispatch ==============

    async def handle(self, scope, receive, send) -> None:
        """Dispatch one HTTP request on /mcp. Raises ``ServiceError`` for broker-level failures."""
        method = scope["method"]
        session_id = _header(scope, _SESSION_HEADER_BYTES)
        session = self.get(session_id)

        if method == "POST":
            if session is not None:
                self.touch(session)
                async with session.lock:
                    await session.context.handle_request(scope, receive, send)
                return
            await self._handle_first_contact(_without_header(scope, _SESSION_HEADER_BYTES), receive, send)
            return

        if session is None:
            if method == "GET":
                raise SessionNotFound("No session. Send initialize first.", status_code=400)
            raise SessionNotFound("Session not found")

        if method == "DELETE":
            await session.context.handle_request(scope, receive, send)
            await self.close(session.session_id)
            return

        self.touch(session)
        await session.context.handle_request(scope, receive, send)

    async def _handle_first_contact(self, scope, receive, send) -> None:
        session = await self.open()
        status = {}

        async def send_wrapper(message):
            if message["type"] == "http.response.start":
                status["code"] = message["status"]
            await send(message)

        try:
            async with session.lock:
                await session.context.handle_request(scope, receive, send_wrapper)
        finally:
            # A fresh session whose first exchange failed never becomes usable.
            if status.get("code", 500) >= 400:
                logger.info(
                    f"[SESSION] First contact on {session.session_id} failed ({status.get('code')}), discarding"
                )
                await self.close(session.session_id)


def _header(scope, name: bytes) -> Optional[str]:
    for key, value in scope.get("headers", []):
        if key.lower() == name:
            return value.decode("latin-1")
    return None


def _without_header(scope, name: bytes) -> dict:
    headers = [(k, v) for k, v in scope.get("headers", []) if k.lower() != name]
    return {**scope, "headers": headers}


class McpEndpoint:
    """ASGI app for /mcp: admission gate, then the session broker."""

    def __init__(self, broker: SessionBroker, rate_limiter=None, limit: int = MCP_LIMIT):
        self.broker = broker
        self.rate_limiter = rate_limiter
        self.limit = limit

    async def __call__(self, scope, receive, send) -> None:
        try:
            if scope["method"] == "POST":
                check_admission(
                    self.rate_limiter, "mcp", client_ip(scope), self.limit, "POST", scope.get("path", "/mcp")
                )
            await self.broker.handle(scope, receive, send)
        except ServiceError as e:
            response = JSONResponse(e.to_dict(), status_code=e.status_code)
            await response(scope, receive, send)
