from contextvars import ContextVar

from structlog.contextvars import bind_contextvars

# Context variables for the tutoring domain
session_id_ctx: ContextVar[str | None] = ContextVar("session_id", default=None)
user_id_ctx: ContextVar[str | None] = ContextVar("user_id", default=None)
chapter_id_ctx: ContextVar[str | None] = ContextVar("chapter_id", default=None)


def get_session_id() -> str | None:
    return session_id_ctx.get()


def get_user_id() -> str | None:
    return user_id_ctx.get()


def get_chapter_id() -> str | None:
    return chapter_id_ctx.get()


def bind_turn_context(
    *, user_id: str | None = None, chapter_id: str | None = None, session_id: str | None = None
) -> None:
    """
    Sets the turn identifiers for the current task and binds them to structlog.
    """
    if user_id is not None:
        user_id_ctx.set(user_id)
    if chapter_id is not None:
        chapter_id_ctx.set(chapter_id)
    if session_id is not None:
        session_id_ctx.set(session_id)
    bind_contextvars(
        **{
            k: v
            for k, v in {"user_id": user_id, "chapter_id": chapter_id, "session_id": session_id}.items()
            if v is not None
        }
    )
