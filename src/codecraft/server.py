from __future__ import annotations

import asyncio
import json
import logging
import queue
import threading
from collections.abc import AsyncIterator
from http import HTTPStatus
from pathlib import Path
from typing import Annotated, Any

import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from rich.console import Console
from starlette.exceptions import HTTPException as StarletteHTTPException

from codecraft import __version__
from codecraft.channel import RunSession, SessionRegistry
from codecraft.chat import ChatService
from codecraft.config import load_config
from codecraft.errors import (
    AlreadyApplied,
    BranchExists,
    CodecraftError,
    CommitFailed,
    ConversationNotFound,
    CredentialNotFound,
    DuplicateProject,
    MessageNotFound,
    ModelError,
    NoProposedChanges,
    NotFound,
    ProjectNotFound,
    UpstreamError,
)
from codecraft.models import (
    TERMINAL_EVENT_TYPES,
    ApplyRequest,
    CreateBranchRequest,
    CreateProjectRequest,
    CreatePullRequestRequest,
    DoneEvent,
    SendMessageRequest,
    StreamEvent,
)
from codecraft.store import StateDB

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.05

_ERROR_STATUS: list[tuple[tuple[type[Exception], ...], HTTPStatus]] = [
    (
        (ProjectNotFound, ConversationNotFound, MessageNotFound, NotFound),
        HTTPStatus.NOT_FOUND,
    ),
    ((CredentialNotFound,), HTTPStatus.UNAUTHORIZED),
    ((NoProposedChanges,), HTTPStatus.BAD_REQUEST),
    ((DuplicateProject, AlreadyApplied, BranchExists), HTTPStatus.CONFLICT),
    ((CommitFailed, UpstreamError, ModelError), HTTPStatus.BAD_GATEWAY),
]


def status_for(exc: Exception) -> HTTPStatus:
    for types, status in _ERROR_STATUS:
        if isinstance(exc, types):
            return status
    return HTTPStatus.INTERNAL_SERVER_ERROR


def sse_frame(event: StreamEvent) -> bytes:
    return f"event: {event.type}\ndata: {json.dumps(event.to_wire())}\n\n".encode()


def current_user(x_user_id: Annotated[str | None, Header()] = None) -> str:
    """Identity is established upstream and forwarded in ``X-User-Id``."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=HTTPStatus.UNAUTHORIZED, detail="Unauthorized")
    return x_user_id.strip()


UserId = Annotated[str, Depends(current_user)]


async def _stream_frames(
    session: RunSession, sessions: SessionRegistry
) -> AsyncIterator[bytes]:
    """Frame channel events until the producer closes it.

    The channel is polled from the event loop, so an idle stream holds no
    worker thread. Leaving early (client disconnect cancels this generator)
    cancels the run so it starts no further turns.
    """
    channel = session.channel
    terminated = False
    try:
        while True:
            try:
                event = channel.get_nowait()
            except queue.Empty:
                await asyncio.sleep(POLL_INTERVAL)
                continue
            if event is None:
                break
            terminated = event.type in TERMINAL_EVENT_TYPES
            yield sse_frame(event)
        if not terminated:
            # cancelled through the API while the client stayed connected
            terminated = True
            yield sse_frame(DoneEvent())
    finally:
        if not terminated:
            logger.info("Client left run %s; cancelling", session.run_id)
            channel.cancel()
        sessions.close(session.run_id)


def create_app(service: ChatService, sessions: SessionRegistry) -> FastAPI:
    app = FastAPI(
        title="CodeCraft",
        description="AI coding agent for GitHub repositories",
        version=__version__,
    )

    @app.exception_handler(CodecraftError)
    async def codecraft_error(request: Request, exc: CodecraftError) -> JSONResponse:
        status = status_for(exc)
        logger.warning("%s %s -> %d: %s", request.method, request.url.path, status, exc)
        return JSONResponse({"error": str(exc)}, status_code=status)

    @app.exception_handler(RequestValidationError)
    async def invalid_request(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            {"error": "Invalid request", "details": jsonable_encoder(exc.errors())},
            status_code=HTTPStatus.BAD_REQUEST,
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse({"error": exc.detail}, status_code=exc.status_code)

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            {"error": "Internal server error"},
            status_code=HTTPStatus.INTERNAL_SERVER_ERROR,
        )

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {"status": "ok", "version": __version__, "activeRuns": sessions.active_count}

    # ── Projects ────────────────────────────────────────────────────

    @app.get("/projects")
    def list_projects(user_id: UserId) -> list[dict[str, Any]]:
        return service.list_projects(user_id)

    @app.get("/projects/github-repos")
    def github_repos(user_id: UserId) -> list[dict[str, Any]]:
        return [repo.to_wire() for repo in service.github_repos(user_id)]

    @app.post("/projects", status_code=HTTPStatus.CREATED)
    def create_project(req: CreateProjectRequest, user_id: UserId) -> dict[str, Any]:
        return service.connect_project(user_id, req.repo_full_name)

    @app.get("/projects/{project_id}")
    def get_project(project_id: str, user_id: UserId) -> dict[str, Any]:
        return service.project(user_id, project_id)

    @app.delete("/projects/{project_id}")
    def delete_project(project_id: str, user_id: UserId) -> dict[str, Any]:
        service.delete_project(user_id, project_id)
        return {"success": True}

    @app.get("/conversations/{project_id}")
    def list_conversations(project_id: str, user_id: UserId) -> list[dict[str, Any]]:
        return service.list_conversations(user_id, project_id)

    @app.get("/messages/{conversation_id}")
    def list_messages(conversation_id: str, user_id: UserId) -> list[dict[str, Any]]:
        return service.list_messages(user_id, conversation_id)

    # ── Chat ────────────────────────────────────────────────────────

    @app.post("/chat/send")
    def chat_send(req: SendMessageRequest, user_id: UserId) -> StreamingResponse:
        """Start a run on its own thread and stream its events as SSE."""
        session = sessions.open(user_id)
        channel = session.channel
        try:
            run = service.start_run(
                user_id,
                req.project_id,
                req.content,
                req.conversation_id,
                cancel_event=channel.cancel_event,
            )
        except Exception:
            sessions.close(session.run_id)
            raise

        session.thread = threading.Thread(
            target=service.execute,
            args=(run, channel),
            name=f"codecraft-{session.run_id}",
            daemon=True,
        )
        session.thread.start()
        return StreamingResponse(
            _stream_frames(session, sessions),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Conversation-Id": run.conversation_id,
                "X-Run-Id": session.run_id,
            },
        )

    @app.post("/chat/apply")
    def chat_apply(req: ApplyRequest, user_id: UserId) -> dict[str, Any]:
        result = service.apply(
            user_id, req.project_id, req.message_id, req.commit_message, req.branch
        )
        return {"success": True, "sha": result.sha, "url": result.url}

    @app.post("/runs/{run_id}/cancel")
    def cancel_run(run_id: str, user_id: UserId) -> dict[str, Any]:
        if not sessions.cancel(run_id, user_id):
            raise HTTPException(status_code=HTTPStatus.NOT_FOUND, detail="Run not found")
        return {"cancelled": True}

    # ── Branches / pull requests ────────────────────────────────────

    @app.post("/branches", status_code=HTTPStatus.CREATED)
    def create_branch(req: CreateBranchRequest, user_id: UserId) -> dict[str, Any]:
        return service.create_branch(user_id, req.project_id, req.description, req.base_branch)

    @app.post("/pulls", status_code=HTTPStatus.CREATED)
    def create_pull(req: CreatePullRequestRequest, user_id: UserId) -> dict[str, Any]:
        return service.create_pull_request(
            user_id, req.project_id, req.title, req.head, req.body, req.base
        )

    @app.get("/pulls/{project_id}")
    def list_pulls(project_id: str, user_id: UserId) -> list[dict[str, Any]]:
        return service.list_pull_requests(user_id, project_id)

    return app


class CodecraftServer:
    """HTTP front end: owns the store, the chat service and live run sessions."""

    def __init__(
        self,
        project_root: Path,
        *,
        host: str | None = None,
        port: int | None = None,
        service: ChatService | None = None,
    ) -> None:
        self.project_root = project_root
        self.config = load_config(project_root)
        self.host = host or self.config.server.host
        self.port = self.config.server.port if port is None else port
        if service is None:
            self.db: StateDB | None = StateDB(self.config.db_path(project_root))
            service = ChatService(self.db, self.config)
        else:
            self.db = None
        self.service = service
        self.sessions = SessionRegistry()
        self.app = create_app(self.service, self.sessions)

    def close(self) -> None:
        self.sessions.shutdown()
        if self.db is not None:
            self.db.close()

    def run(self) -> None:
        console = Console()
        console.print(f"[bold]CodeCraft listening on http://{self.host}:{self.port}[/bold]")
        server = uvicorn.Server(
            uvicorn.Config(self.app, host=self.host, port=self.port, log_config=None)
        )
        try:
            server.run()
        finally:
            active = self.sessions.active_count
            if active:
                console.print(f"Cancelling {active} active run(s)")
            self.close()
        console.print("[bold]CodeCraft stopped.[/bold]")
