"""Application factory for the Bookface MCP server."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections import defaultdict
from contextlib import asynccontextmanager, suppress
from functools import wraps
from typing import Any, AsyncIterator, Callable, Optional

import httpx
from fastmcp import Context, FastMCP

from . import rich_logger
from .bookface import PROMPT_KINDS, BookfaceClient
from .config import Settings, get_settings
from .errors import BookfaceError
from .reply_wait import ReplyWaiter, WaitOutcome, create_and_wait, send_and_wait
from .search import DealSearch, SearchKeyProvider
from .session import BookfaceSession, get_session, init_session

logger = logging.getLogger(__name__)

TOOL_METRICS: defaultdict[str, dict[str, int]] = defaultdict(lambda: {"calls": 0, "errors": 0})
TOOL_CLUSTER_MAP: dict[str, str] = {}

CLUSTER_SETUP = "infrastructure"
CLUSTER_MESSAGING = "messaging"
CLUSTER_CONTENT = "content"
CLUSTER_DEALS = "deals"

KNOWLEDGE_BODY_LIMIT = 2000


class ToolExecutionError(Exception):
    def __init__(self, error_type: str, message: str, *, recoverable: bool = True, data: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.error_type = error_type
        self.recoverable = recoverable
        self.data = data or {}

    def to_payload(self) -> dict[str, Any]:
        return {
            "error": {
                "type": self.error_type,
                "message": str(self),
                "recoverable": self.recoverable,
                "data": self.data,
            }
        }


def _record_tool_error(tool_name: str, exc: Exception) -> None:
    logger.warning(
        "tool_error",
        extra={
            "tool": tool_name,
            "error": type(exc).__name__,
            "error_message": str(exc),
        },
    )


def _bind_arguments(signature: inspect.Signature, args: tuple[Any, ...], kwargs: dict[str, Any]) -> inspect.BoundArguments:
    try:
        return signature.bind_partial(*args, **kwargs)
    except TypeError:
        return signature.bind(*args, **kwargs)


def _wrap_exception(tool_name: str, exc: Exception) -> ToolExecutionError:
    if isinstance(exc, BookfaceError):
        return ToolExecutionError(exc.error_type, str(exc), recoverable=exc.recoverable, data={"tool": tool_name, **exc.data})
    if isinstance(exc, httpx.TimeoutException):
        return ToolExecutionError(
            "TIMEOUT",
            f"Request to Bookface timed out: {exc}. Try again in a moment.",
            recoverable=True,
            data={"tool": tool_name, "error_detail": str(exc)},
        )
    if isinstance(exc, httpx.HTTPError):
        return ToolExecutionError(
            "CONNECTION_ERROR",
            f"Connection error talking to Bookface: {exc}. Check network and try again.",
            recoverable=True,
            data={"tool": tool_name, "error_detail": str(exc)},
        )
    if isinstance(exc, ValueError):
        return ToolExecutionError(
            "INVALID_ARGUMENT",
            f"Invalid argument value: {exc}. Check that all parameters have valid values.",
            recoverable=True,
            data={"tool": tool_name, "error_detail": str(exc)},
        )
    return ToolExecutionError(
        "UNHANDLED_EXCEPTION",
        f"Unexpected error ({type(exc).__name__}): {exc}",
        recoverable=False,
        data={"tool": tool_name, "original_error": type(exc).__name__, "error_detail": str(exc)},
    )


def _instrument_tool(tool_name: str, *, cluster: str) -> Callable[[Any], Any]:
    TOOL_CLUSTER_MAP[tool_name] = cluster

    def decorator(func: Any) -> Any:
        signature = inspect.signature(func)

        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            metrics = TOOL_METRICS[tool_name]
            metrics["calls"] += 1
            bound = _bind_arguments(signature, args, kwargs)

            log_ctx = None
            if get_settings().tools_log_enabled:
                try:
                    clean_kwargs = {k: v for k, v in bound.arguments.items() if k != "ctx"}
                    log_ctx = rich_logger.ToolCallContext(tool_name=tool_name, kwargs=clean_kwargs)
                    rich_logger.log_tool_call_start(log_ctx)
                except Exception:
                    # Logging errors should not break tool execution
                    log_ctx = None

            result = None
            error: Optional[Exception] = None
            try:
                result = await func(*args, **kwargs)
            except ToolExecutionError as exc:
                metrics["errors"] += 1
                _record_tool_error(tool_name, exc)
                error = exc
                raise
            except Exception as exc:
                metrics["errors"] += 1
                _record_tool_error(tool_name, exc)
                wrapped_exc = _wrap_exception(tool_name, exc)
                error = wrapped_exc
                raise wrapped_exc from exc
            finally:
                if log_ctx is not None:
                    try:
                        log_ctx.end_time = time.perf_counter()
                        log_ctx.result = result
                        log_ctx.error = error
                        log_ctx.success = error is None
                        rich_logger.log_tool_call_end(log_ctx)
                    except Exception:
                        # Logging errors should not suppress original exceptions
                        pass

            return result

        # Preserve annotations so FastMCP can infer output schema
        with suppress(Exception):
            wrapper.__annotations__ = getattr(func, "__annotations__", {})
        return wrapper

    return decorator


def _tool_metrics_snapshot() -> list[dict[str, Any]]:
    return [
        {
            "name": name,
            "calls": data["calls"],
            "errors": data["errors"],
            "cluster": TOOL_CLUSTER_MAP.get(name, "unclassified"),
        }
        for name, data in sorted(TOOL_METRICS.items())
    ]


def _lifespan_factory(settings: Settings) -> Callable[[FastMCP], AsyncIterator[None]]:
    @asynccontextmanager
    async def lifespan(app: FastMCP) -> AsyncIterator[None]:
        init_session(settings)
        yield

    return lifespan  # type: ignore[return-value]


def _resolve_wait(timeout_seconds: Optional[float], poll_interval_seconds: Optional[float]) -> tuple[float, float]:
    """Fill omitted wait bounds from settings and reject unusable values."""
    defaults = get_session().settings.reply_wait
    if timeout_seconds is None:
        timeout_seconds = defaults.timeout_seconds
    if poll_interval_seconds is None:
        poll_interval_seconds = defaults.poll_interval_seconds
    if timeout_seconds <= 0:
        raise ToolExecutionError(
            "INVALID_ARGUMENT",
            f"timeout_seconds must be positive, got {timeout_seconds}.",
            data={"provided": timeout_seconds},
        )
    if poll_interval_seconds <= 0:
        raise ToolExecutionError(
            "INVALID_ARGUMENT",
            f"poll_interval_seconds must be positive, got {poll_interval_seconds}.",
            data={"provided": poll_interval_seconds},
        )
    return timeout_seconds, poll_interval_seconds


def _wait_payload(outcome: WaitOutcome, timeout_seconds: float) -> dict[str, Any]:
    payload = outcome.to_dict()
    if not outcome.replied:
        payload["message"] = (
            f"No reply within {timeout_seconds:g}s. Thread {outcome.thread_id} is still open: call "
            f"wait_for_reply(thread_id={outcome.thread_id}, baseline_count={outcome.baseline}) "
            "or get_chat_history later."
        )
    return payload


def _post_to_dict(data: Any) -> dict[str, Any]:
    post: Any = {}
    if isinstance(data, dict):
        post = data.get("post")
        if post is None:
            post = data
    if not isinstance(post, dict):
        post = {}
    user = post.get("user") or {}
    company = user.get("byline_company") or {}
    vote_info = post.get("vote_info") or {}
    return {
        "id": post.get("id"),
        "title": post.get("title"),
        "body": post.get("body"),
        "author": user.get("full_name"),
        "company": company.get("name"),
        "created_at": post.get("created_at"),
        "upvotes": vote_info.get("count", post.get("upvotes_count")),
        "comments": [
            {
                "id": comment.get("id"),
                "author": (comment.get("user") or {}).get("full_name"),
                "body": comment.get("body"),
                "created_at": comment.get("created_at"),
            }
            for comment in post.get("comments") or []
        ],
    }


def _knowledge_to_list(data: Any, bookface_base: str) -> list[dict[str, Any]]:
    if isinstance(data, list):
        posts = data
    elif isinstance(data, dict):
        posts = data.get("posts")
        if posts is None:
            posts = data.get("knowledge_posts")
        if posts is None:
            posts = [data]
    else:
        posts = []
    articles = []
    for post in posts:
        if not isinstance(post, dict):
            continue
        body = post.get("body")
        articles.append(
            {
                "id": post.get("id"),
                "title": post.get("title"),
                "body": body[:KNOWLEDGE_BODY_LIMIT] if isinstance(body, str) else body,
                "author": (post.get("user") or {}).get("full_name"),
                "upvotes": (post.get("vote_info") or {}).get("count", post.get("upvotes_count")),
                "url": f"{bookface_base}/posts/{post.get('id')}",
            }
        )
    return articles


def _deal_to_dict(data: Any, bookface_base: str) -> dict[str, Any]:
    deal = data.get("deal", data) if isinstance(data, dict) else {}
    company = deal.get("company")
    return {
        "id": deal.get("id"),
        "title": deal.get("title") or deal.get("name"),
        "company": company.get("name") if isinstance(company, dict) else (company or deal.get("company_name")),
        "description": deal.get("description"),
        "details": deal.get("details") or deal.get("offer"),
        "redemption_instructions": deal.get("redemption_instructions") or deal.get("how_to_redeem"),
        "tags": deal.get("tags") or [],
        "created_at": deal.get("created_at"),
        "url": f"{bookface_base}/deals/{deal.get('id')}",
    }


def build_mcp_server() -> FastMCP:
    """Create and configure the FastMCP server instance."""
    settings: Settings = get_settings()
    lifespan = _lifespan_factory(settings)

    instructions = (
        "You are the YC Bookface bridge. Chat with the Bookface agent, read posts and knowledge "
        "articles, and search the deals directory on behalf of an authenticated founder."
    )

    mcp = FastMCP(name="yc-bookface", instructions=instructions, lifespan=lifespan)  # type: ignore[arg-type]

    key_provider: dict[str, Any] = {"session": None, "provider": None}

    def _client() -> BookfaceClient:
        return BookfaceClient(get_session())

    def _waiter(client: BookfaceClient) -> ReplyWaiter:
        return ReplyWaiter(client.chat_history)

    def _deal_search() -> DealSearch:
        session: BookfaceSession = get_session()
        # The secured key cache lives as long as the session it was scraped with
        if key_provider["session"] is not session:
            key_provider["session"] = session
            key_provider["provider"] = SearchKeyProvider(
                BookfaceClient(session), ttl_seconds=session.settings.search.key_ttl_seconds
            )
        return DealSearch(session, key_provider["provider"], session.settings.search)

    @mcp.tool(name="health_check", description="Report configuration and credential sources without calling Bookface.")
    @_instrument_tool("health_check", cluster=CLUSTER_SETUP)
    async def health_check(ctx: Context) -> dict[str, Any]:
        """
        Quick readiness probe. Does not touch the network.

        Returns
        -------
        dict
            {
              "status": "ok" | "degraded",
              "environment": str,
              "messages_base_url": str,
              "credential_sources": {"sso_key": [...], "session_key": [...]},
              "default_user_id_configured": bool,
              "tools": [ {name, calls, errors, cluster}, ... ]
            }

        `status` is "degraded" when either cookie has no source at all.
        """
        session = get_session()
        sources = session.credentials.describe_sources()
        status = "ok" if all(sources.values()) else "degraded"
        await ctx.info(f"Health check: {status}.")
        return {
            "status": status,
            "environment": session.settings.environment,
            "messages_base_url": session.settings.bookface.messages_base_url,
            "credential_sources": sources,
            "default_user_id_configured": session.settings.bookface.default_user_id is not None,
            "tools": _tool_metrics_snapshot(),
        }

    @mcp.tool(name="create_chat")
    @_instrument_tool("create_chat", cluster=CLUSTER_MESSAGING)
    async def create_chat(ctx: Context, message: str | None = None) -> dict[str, Any]:
        """
        Create a new Bookface agent chat thread and optionally send an opening message.

        Parameters
        ----------
        message : str, optional
            Opening message. Omit to just create the thread.

        Returns
        -------
        dict
            { thread_id: int, message_sent: bool }

        Use `create_chat_and_wait` instead when you need the agent's answer in the same call.
        """
        thread = await _client().create_chat(message)
        thread_id = thread.get("id")
        await ctx.info(f"Thread {thread_id} created.")
        return {"thread_id": thread_id, "message_sent": bool(message)}

    @mcp.tool(name="create_chat_and_wait")
    @_instrument_tool("create_chat_and_wait", cluster=CLUSTER_MESSAGING)
    async def create_chat_and_wait(
        ctx: Context,
        message: str,
        timeout_seconds: float | None = None,
        poll_interval_seconds: float | None = None,
    ) -> dict[str, Any]:
        """
        Start a new agent chat with `message` and block until the agent replies.

        How it works
        ------------
        The thread is created with the message, then history is polled every
        `poll_interval_seconds` until a second message (the reply) appears or
        `timeout_seconds` elapse. Failed polls are skipped, not fatal. Omitted bounds
        default to REPLY_TIMEOUT_SECONDS (120) and REPLY_POLL_INTERVAL_SECONDS (3).

        Returns
        -------
        dict
            { status: "replied" | "timed_out", thread_id, baseline_count, message_count,
              reply, waited_seconds, [message] }

        A "timed_out" result is not an error: the thread stays open and the payload says
        how to resume with `wait_for_reply`.
        """
        timeout_seconds, poll_interval_seconds = _resolve_wait(timeout_seconds, poll_interval_seconds)
        client = _client()
        outcome = await create_and_wait(
            client,
            _waiter(client),
            message,
            timeout_seconds=timeout_seconds,
            poll_interval_seconds=poll_interval_seconds,
        )
        await ctx.info(f"Thread {outcome.thread_id}: {outcome.status} after {outcome.waited_seconds:.0f}s.")
        return _wait_payload(outcome, timeout_seconds)

    @mcp.tool(name="send_message")
    @_instrument_tool("send_message", cluster=CLUSTER_MESSAGING)
    async def send_message(ctx: Context, thread_id: int, message: str) -> dict[str, Any]:
        """Send a message to an existing agent chat thread without waiting for a reply."""
        await _client().send_message(thread_id, message)
        await ctx.info(f"Message sent to thread {thread_id}.")
        return {"thread_id": thread_id, "sent": True}

    @mcp.tool(name="send_and_wait")
    @_instrument_tool("send_and_wait", cluster=CLUSTER_MESSAGING)
    async def send_and_wait_tool(
        ctx: Context,
        thread_id: int,
        message: str,
        timeout_seconds: float | None = None,
        poll_interval_seconds: float | None = None,
    ) -> dict[str, Any]:
        """
        Send `message` to an existing thread and block until the agent replies.

        The thread's message count is read before sending, so the wait completes only
        once both our message and a newer one are present. Same result shape as
        `create_chat_and_wait`.
        """
        timeout_seconds, poll_interval_seconds = _resolve_wait(timeout_seconds, poll_interval_seconds)
        client = _client()
        outcome = await send_and_wait(
            client,
            _waiter(client),
            thread_id,
            message,
            timeout_seconds=timeout_seconds,
            poll_interval_seconds=poll_interval_seconds,
        )
        await ctx.info(f"Thread {thread_id}: {outcome.status} after {outcome.waited_seconds:.0f}s.")
        return _wait_payload(outcome, timeout_seconds)

    @mcp.tool(name="wait_for_reply")
    @_instrument_tool("wait_for_reply", cluster=CLUSTER_MESSAGING)
    async def wait_for_reply(
        ctx: Context,
        thread_id: int,
        baseline_count: int,
        timeout_seconds: float | None = None,
        poll_interval_seconds: float | None = None,
    ) -> dict[str, Any]:
        """
        Resume waiting on a thread after a "timed_out" result.

        Pass the `baseline_count` from the timed-out payload; the wait completes once the
        thread holds at least `baseline_count + 2` messages.
        """
        timeout_seconds, poll_interval_seconds = _resolve_wait(timeout_seconds, poll_interval_seconds)
        if baseline_count < 0:
            raise ToolExecutionError(
                "INVALID_ARGUMENT",
                f"baseline_count must not be negative, got {baseline_count}.",
                data={"provided": baseline_count},
            )
        client = _client()
        outcome = await _waiter(client).wait_for_reply(
            thread_id,
            baseline_count,
            timeout_seconds=timeout_seconds,
            poll_interval_seconds=poll_interval_seconds,
        )
        return _wait_payload(outcome, timeout_seconds)

    @mcp.tool(name="get_new_messages")
    @_instrument_tool("get_new_messages", cluster=CLUSTER_MESSAGING)
    async def get_new_messages(ctx: Context, user_id: str | None = None) -> Any:
        """
        Poll for new messages for a user.

        `user_id` defaults to the YC_USER_ID setting; the call fails if neither is available.
        """
        uid = user_id or get_session().settings.bookface.default_user_id
        if not uid:
            raise ToolExecutionError(
                "MISSING_USER_ID",
                "No user_id provided and YC_USER_ID not set.",
                recoverable=True,
            )
        return await _client().new_messages(uid)

    @mcp.tool(name="get_chat_history")
    @_instrument_tool("get_chat_history", cluster=CLUSTER_MESSAGING)
    async def get_chat_history(ctx: Context, thread_id: int, last_n: int = 10) -> list[Any]:
        """
        Return the last `last_n` messages of a thread, oldest first.

        Asking for more messages than exist returns the whole thread.
        """
        if last_n < 1:
            raise ToolExecutionError(
                "INVALID_LIMIT",
                f"last_n must be at least 1, got {last_n}. Use a positive integer.",
                recoverable=True,
                data={"provided": last_n, "min": 1},
            )
        messages = await _client().chat_history(thread_id)
        await ctx.info(f"Thread {thread_id} holds {len(messages)} messages.")
        return messages[-last_n:]

    @mcp.tool(name="get_thread")
    @_instrument_tool("get_thread", cluster=CLUSTER_MESSAGING)
    async def get_thread(ctx: Context, thread_id: int) -> Any:
        """Get metadata for a specific thread."""
        return await _client().thread(thread_id)

    @mcp.tool(name="get_suggested_prompts")
    @_instrument_tool("get_suggested_prompts", cluster=CLUSTER_MESSAGING)
    async def get_suggested_prompts(ctx: Context, count: int = 2) -> dict[str, Any]:
        """
        Fetch the suggested agent prompts shown on the new-chat screen.

        Both categories are fetched concurrently; a category whose request fails is null.
        """
        client = _client()
        fast, slow = await asyncio.gather(*(client.suggested_prompts(kind, count) for kind in PROMPT_KINDS))
        return {"fast": fast, "slow": slow}

    @mcp.tool(name="mark_read")
    @_instrument_tool("mark_read", cluster=CLUSTER_MESSAGING)
    async def mark_read(ctx: Context, thread_id: int, message_id: int) -> dict[str, Any]:
        """Move the thread's read watermark to `message_id`."""
        await _client().mark_read(thread_id, message_id)
        return {"thread_id": thread_id, "last_read_message_id": message_id}

    @mcp.tool(name="get_current_user")
    @_instrument_tool("get_current_user", cluster=CLUSTER_SETUP)
    async def get_current_user(ctx: Context) -> Any:
        """Get the authenticated user's profile and session info."""
        return await _client().current_user()

    @mcp.tool(name="get_post")
    @_instrument_tool("get_post", cluster=CLUSTER_CONTENT)
    async def get_post(ctx: Context, post_id: int) -> dict[str, Any]:
        """
        Fetch a Bookface post by numeric ID (e.g. 83782 from bookface.ycombinator.com/posts/83782).

        Returns
        -------
        dict
            { id, title, body, author, company, created_at, upvotes,
              comments: [ {id, author, body, created_at}, ... ] }
        """
        return _post_to_dict(await _client().post(post_id))

    @mcp.tool(name="get_knowledge")
    @_instrument_tool("get_knowledge", cluster=CLUSTER_CONTENT)
    async def get_knowledge(ctx: Context, slug: str) -> list[dict[str, Any]]:
        """
        Fetch a knowledge base article by slug (e.g. 'BJ-founder-sales').

        Article bodies are cut to the first 2000 characters; use `get_post` on an
        article's id for the full text.
        """
        session = get_session()
        data = await BookfaceClient(session).knowledge(slug)
        return _knowledge_to_list(data, session.settings.bookface.bookface_base_url)

    @mcp.tool(name="search_deals")
    @_instrument_tool("search_deals", cluster=CLUSTER_DEALS)
    async def search_deals(
        ctx: Context,
        query: str = "",
        tag: str | None = None,
        limit: int = 20,
    ) -> dict[str, Any]:
        """
        Search the Bookface deals directory.

        Parameters
        ----------
        query : str
            Free-text query. Empty lists everything.
        tag : str, optional
            Restrict to one tag (e.g. "Cloud").
        limit : int
            Hits to return, clamped to 1..100 (default 20).

        Returns
        -------
        dict
            { query, tag, total, hits: [ {id, title, company, description, tags, url} ],
              [tags: [ {tag, count} ]] }

        Without `tag`, the payload also carries up to 30 tags ranked by deal count, which is
        a good way to discover what to filter on.
        """
        result = await _deal_search().search(query, tag, limit)
        await ctx.info(f"Deal search returned {len(result['hits'])} of {result['total']} hits.")
        return result

    @mcp.tool(name="get_deal")
    @_instrument_tool("get_deal", cluster=CLUSTER_DEALS)
    async def get_deal(ctx: Context, deal_id: int) -> dict[str, Any]:
        """Fetch one deal by id (the `id` field of a `search_deals` hit)."""
        session = get_session()
        data = await BookfaceClient(session).deal(deal_id)
        return _deal_to_dict(data, session.settings.bookface.bookface_base_url)

    return mcp
