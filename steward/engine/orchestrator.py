"""Turn orchestrator: drives one conversational turn to completion.

A turn starts from user input and loops:

    dispatch conversation -> stream response -> for each proposed tool
    call, in order: permission -> execute -> append result -> dispatch

until the model answers with text only, the iteration limit is hit, the
turn is stopped, or the provider fails. Tool calls are resolved one at a
time because a later call may depend on an earlier call's side effect.

Tool failures (including unknown tools and permission denials) are fed
back to the model as error results; only provider failures escape run().
"""
from __future__ import annotations

import asyncio
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from .callbacks import (
    TurnCallbacks,
    coerce_permission_answer,
    fire_callback,
    resolve_answer,
)
from .cancellation import CancellationToken
from .config import EngineConfig
from .errors import (
    ProviderError,
    ToolExecutionError,
    TurnCancelledError,
    TurnInProgressError,
    UnknownToolError,
)
from .lifecycle import TERMINAL_TURN_STATES, validate_transition
from .models import (
    DecisionSource,
    ImageBlock,
    InvocationStatus,
    Message,
    PermissionDecision,
    PermissionRequest,
    TextBlock,
    ToolInvocation,
    ToolResultBlock,
    ToolUseBlock,
    TurnResult,
    TurnState,
    Usage,
)
from .permissions import PermissionEngine
from .providers.base import (
    Provider,
    StreamEnd,
    TextDelta,
    ToolCallProposed,
    UsageUpdate,
)
from .tasks import BackgroundableOperation, BackgroundTask, TaskManager
from .tool_history import ToolHistory
from .tool_registry import ToolRegistry, ToolResult

logger = logging.getLogger(__name__)

DENIED_BY_USER = "User declined to run this tool"
CANCELLED_RESULT = "Cancelled before execution"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def describe_tool_call(name: str, args: dict[str, Any]) -> str:
    """Human-readable summary shown in permission prompts."""
    if name == "bash":
        return f"Run command: {args.get('command', '')}"
    if name == "write_file":
        return f"Write file: {args.get('path', '')}"
    if name == "edit_file":
        return f"Edit file: {args.get('path', '')}"
    if name == "delete_file":
        return f"Delete file: {args.get('path', '')}"
    try:
        rendered = json.dumps(args, default=str)
    except (TypeError, ValueError):
        rendered = str(args)
    return f"{name}: {rendered[:100]}"


class TurnOrchestrator:
    """Runs turns against one conversation. Not reentrant."""

    def __init__(
        self,
        provider: Provider,
        tools: ToolRegistry,
        *,
        config: EngineConfig | None = None,
        permissions: PermissionEngine | None = None,
        callbacks: TurnCallbacks | None = None,
        history: ToolHistory | None = None,
        task_manager: TaskManager | None = None,
        rule_store: object | None = None,
    ) -> None:
        self._provider = provider
        self._tools = tools
        self._config = config or EngineConfig()
        self._permissions = permissions or PermissionEngine(
            self._config.permission_config()
        )
        self._callbacks = callbacks or TurnCallbacks()
        self._history = history or ToolHistory(
            max_visible_collapsed=self._config.max_visible_tool_uses,
            truncate_threshold=self._config.tool_result_truncate_chars,
        )
        self._task_manager = task_manager
        # Anything with save(rules); receives persistent rules after a
        # human chooses "always".
        self._rule_store = rule_store

        self._messages: list[Message] = []
        self._usage = Usage()
        self._state = TurnState.IDLE
        self._running = False
        self._token: CancellationToken | None = None
        self._turn_count = 0
        self._iteration = 0
        self._current_op: BackgroundableOperation | None = None

    # ── Properties ──

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    @property
    def usage(self) -> Usage:
        return self._usage.copy()

    @property
    def current_iteration(self) -> int:
        return self._iteration

    @property
    def permissions(self) -> PermissionEngine:
        return self._permissions

    @property
    def history(self) -> ToolHistory:
        return self._history

    @property
    def task_manager(self) -> TaskManager | None:
        return self._task_manager

    # ── Public operations ──

    async def run(self, user_input: str | list[Any]) -> TurnResult:
        """Run one turn. Raises ProviderError on provider failure.

        If the task running the turn is itself cancelled, the turn is
        moved to CANCELLED before CancelledError propagates, so the
        next run() starts cleanly.
        """
        if self._running:
            raise TurnInProgressError("start a turn")
        content = self._user_content(user_input)
        self._running = True
        token = CancellationToken()
        self._token = token
        self._turn_count += 1
        self._iteration = 0
        result = TurnResult(state=self._state, usage=Usage())

        try:
            self._transition(TurnState.DISPATCHED)
            self._history.start_turn()
            self._messages.append(Message(role="user", content=content))
            logger.info(
                "Turn %d started (history=%d messages)",
                self._turn_count, len(self._messages),
            )
            await fire_callback(
                self._callbacks.on_turn_start, self._turn_count, label="on_turn_start",
            )
            try:
                return await self._loop(token, result)
            except TurnCancelledError:
                return await self._end_cancelled(result)
        except BaseException:
            self._abandon(result)
            raise
        finally:
            self._running = False
            self._token = None
            self._current_op = None

    async def _loop(self, token: CancellationToken, result: TurnResult) -> TurnResult:
        """Iterate dispatch/stream/tools until the turn settles.

        Raises TurnCancelledError at each checkpoint after stop().
        """
        while True:
            token.raise_if_cancelled()
            self._iteration += 1
            result.iterations = self._iteration
            if self._state != TurnState.DISPATCHED:
                self._transition(TurnState.DISPATCHED)

            try:
                assistant, proposals = await self._stream_response(result)
            except ProviderError as exc:
                self._transition(TurnState.ERROR)
                result.state = TurnState.ERROR
                result.error = str(exc)
                logger.error("Turn %d failed: %s", self._turn_count, exc)
                await fire_callback(self._callbacks.on_error, exc, label="on_error")
                raise

            # A response that resolves after stop() is discarded.
            token.raise_if_cancelled()

            self._messages.append(assistant)
            if assistant.text:
                result.response = assistant.text

            if not proposals:
                self._transition(TurnState.COMPLETE)
                result.state = TurnState.COMPLETE
                logger.info(
                    "Turn %d complete after %d iteration(s) usage=%d/%d",
                    self._turn_count, self._iteration,
                    result.usage.input_tokens, result.usage.output_tokens,
                )
                await fire_callback(
                    self._callbacks.on_turn_complete, result, label="on_turn_complete",
                )
                return result

            self._transition(TurnState.TOOLS_PENDING)
            blocks = await self._run_tools(proposals, token, result)
            if blocks:
                self._messages.append(Message(role="user", content=blocks))

            token.raise_if_cancelled()

            if self._iteration >= self._config.max_iterations:
                self._transition(TurnState.COMPLETE)
                result.state = TurnState.COMPLETE
                result.limit_reached = True
                result.notice = (
                    f"Turn limit reached ({self._config.max_iterations} iterations)"
                )
                logger.warning(
                    "Turn %d stopped: iteration limit %d reached",
                    self._turn_count, self._config.max_iterations,
                )
                await fire_callback(
                    self._callbacks.on_turn_complete, result, label="on_turn_complete",
                )
                return result

    def stop(self) -> bool:
        """Request cancellation of the in-flight turn.

        Safe at any time; returns False when there is nothing to stop.
        """
        token = self._token
        if token is None or not self._running:
            logger.debug("stop() with no turn in progress")
            return False
        stopped = token.cancel("Turn stopped by user")
        if stopped:
            logger.info("Turn %d stop requested (state=%s)", self._turn_count, self._state.value)
        return stopped

    def detach_current_tool(self) -> BackgroundTask | None:
        """Move the executing tool call into the task manager.

        The tool keeps running in the background; the turn receives a
        placeholder result naming the task and carries on.
        """
        op = self._current_op
        if op is None or not op.running or self._task_manager is None:
            return None
        task = op.background()
        logger.info("Tool call detached into background task %s", task.id)
        return task

    def clear_history(self) -> None:
        if self._running:
            raise TurnInProgressError("clear history")
        self._messages = []
        self._usage = Usage()
        self._iteration = 0
        self._history.clear()
        if self._state in TERMINAL_TURN_STATES:
            self._transition(TurnState.IDLE)

    def set_messages(self, messages: list[Message]) -> None:
        """Replace the conversation, e.g. when restoring a session."""
        if self._running:
            raise TurnInProgressError("replace messages")
        self._messages = list(messages)

    # ── Streaming ──

    async def _stream_response(
        self, result: TurnResult,
    ) -> tuple[Message, list[ToolCallProposed]]:
        self._transition(TurnState.STREAMING)
        text_parts: list[str] = []
        proposals: list[ToolCallProposed] = []
        catalog = self._tools.catalog()
        try:
            async for event in self._provider.stream(
                list(self._messages),
                catalog,
                system_prompt=self._config.system_prompt,
            ):
                if isinstance(event, TextDelta):
                    if event.text:
                        text_parts.append(event.text)
                        await fire_callback(self._callbacks.on_text, event.text, label="on_text")
                elif isinstance(event, ToolCallProposed):
                    proposals.append(ToolCallProposed(
                        id=event.id or f"toolu_{uuid.uuid4().hex[:12]}",
                        name=event.name,
                        arguments=event.arguments if isinstance(event.arguments, dict) else {},
                    ))
                elif isinstance(event, UsageUpdate):
                    result.usage.add(event.input_tokens, event.output_tokens)
                    self._usage.add(event.input_tokens, event.output_tokens)
                    await fire_callback(
                        self._callbacks.on_usage,
                        event.input_tokens, event.output_tokens,
                        label="on_usage",
                    )
                elif isinstance(event, StreamEnd):
                    break
                else:
                    logger.debug("Ignoring unknown provider event %r", event)
        except asyncio.CancelledError:
            raise
        except ProviderError:
            raise
        except Exception as exc:
            raise ProviderError(
                self._provider.name, f"{type(exc).__name__}: {exc}",
            ) from exc

        content: list[Any] = []
        text = "".join(text_parts)
        if text:
            content.append(TextBlock(text=text))
        for proposal in proposals:
            content.append(ToolUseBlock(
                id=proposal.id, name=proposal.name, input=dict(proposal.arguments),
            ))
        return Message(role="assistant", content=content), proposals

    # ── Tool calls ──

    async def _run_tools(
        self,
        proposals: list[ToolCallProposed],
        token: CancellationToken,
        result: TurnResult,
    ) -> list[ToolResultBlock]:
        blocks: list[ToolResultBlock] = []
        for proposal in proposals:
            invocation = ToolInvocation(
                name=proposal.name,
                arguments=dict(proposal.arguments),
                invocation_id=proposal.id,
            )
            result.invocations.append(invocation)
            if token.cancelled:
                self._mark_cancelled(invocation, CANCELLED_RESULT)
                continue
            block = await self._resolve_invocation(invocation, token)
            if block is not None:
                blocks.append(block)
        return blocks

    async def _resolve_invocation(
        self, invocation: ToolInvocation, token: CancellationToken,
    ) -> ToolResultBlock | None:
        invocation.started_at = _utcnow()
        invocation.history_id = self._history.start_tool_use(
            invocation.name, invocation.arguments,
        )
        await fire_callback(self._callbacks.on_tool_use, invocation, label="on_tool_use")

        if not self._tools.has(invocation.name):
            error = UnknownToolError(invocation.name)
            logger.warning("Model requested unknown tool %s", invocation.name)
            return await self._complete_invocation(invocation, str(error.reason), True)

        decision = await self._authorize(invocation, token)
        if decision is None:
            self._mark_cancelled(invocation, "Cancelled while awaiting permission")
            return None
        invocation.decision = decision
        if not decision.allowed:
            invocation.status = InvocationStatus.DENIED
            if decision.source == DecisionSource.USER:
                message = DENIED_BY_USER
            else:
                message = f"Permission denied: {decision.reason}"
            logger.info(
                "Tool %s denied (%s)", invocation.name, decision.reason,
            )
            return await self._complete_invocation(invocation, message, True)

        self._transition(TurnState.EXECUTING)
        invocation.status = InvocationStatus.EXECUTING
        output, is_error = await self._execute(invocation)
        self._transition(TurnState.TOOLS_PENDING)

        if token.cancelled:
            # Let the call finish but drop its result from the conversation.
            self._history.end_tool_use(invocation.history_id, output, is_error)
            invocation.result = output
            invocation.is_error = is_error
            invocation.status = InvocationStatus.CANCELLED
            invocation.ended_at = _utcnow()
            logger.info("Discarding result of %s after stop()", invocation.name)
            return None
        return await self._complete_invocation(invocation, output, is_error)

    async def _authorize(
        self, invocation: ToolInvocation, token: CancellationToken,
    ) -> PermissionDecision | None:
        """Return the decision for a call, or None if the turn was stopped
        while waiting for the human."""
        if (
            not self._config.require_permission
            or not self._tools.requires_permission(invocation.name)
        ):
            return PermissionDecision(
                allowed=True,
                reason="Permission not required",
                source=DecisionSource.UNGATED,
            )

        request = PermissionRequest(
            tool=invocation.name,
            args=dict(invocation.arguments),
            description=describe_tool_call(invocation.name, invocation.arguments),
        )
        decision = self._permissions.check(request)
        logger.debug(
            "Permission check tool=%s allowed=%s source=%s reason=%s",
            invocation.name, decision.allowed, decision.source.value, decision.reason,
        )
        if not decision.needs_confirmation:
            return decision

        self._transition(TurnState.AWAITING_PERMISSION)
        invocation.status = InvocationStatus.AWAITING_PERMISSION
        callback = self._callbacks.on_permission_request
        if callback is None:
            logger.warning(
                "Tool %s needs confirmation but no permission handler is set; denying",
                invocation.name,
            )
            self._transition(TurnState.TOOLS_PENDING)
            return PermissionDecision(
                allowed=False,
                reason="No permission handler configured",
                source=DecisionSource.DEFAULT,
            )

        answer = await self._await_permission(callback, request, token)
        if answer is None:
            return None
        reply = coerce_permission_answer(answer)
        rule = self._permissions.record_decision(
            request,
            reply.allowed,
            remember_for_session=reply.remember_for_session,
            persistent=reply.persistent,
        )
        if rule is not None:
            self._flush_rules()
        logger.info(
            "Permission answer tool=%s reply=%s", invocation.name, reply.value,
        )
        self._transition(TurnState.TOOLS_PENDING)
        return PermissionDecision(
            allowed=reply.allowed,
            reason="User approved" if reply.allowed else "User declined",
            rule=rule,
            source=DecisionSource.USER,
        )

    async def _await_permission(
        self,
        callback: Any,
        request: PermissionRequest,
        token: CancellationToken,
    ) -> Any:
        """Wait for the presenter's answer, racing against stop()."""

        async def ask() -> Any:
            return await resolve_answer(callback(request))

        ask_task = asyncio.ensure_future(ask())
        stop_wait = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({ask_task, stop_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_wait.cancel()
            if not ask_task.done():
                ask_task.cancel()

        if token.cancelled:
            return None
        try:
            return ask_task.result()
        except Exception:
            logger.warning(
                "Permission callback error for %s, denying", request.tool, exc_info=True,
            )
            return False

    async def _execute(self, invocation: ToolInvocation) -> tuple[str, bool]:
        name = invocation.name
        args = dict(invocation.arguments)

        async def call() -> ToolResult:
            return await self._tools.execute(name, args)

        def to_output(tool_result: ToolResult) -> str:
            if tool_result.is_error:
                raise ToolExecutionError(name, tool_result.output)
            return tool_result.output

        try:
            if self._task_manager is None:
                outcome: ToolResult | BackgroundTask = await call()
            else:
                op = BackgroundableOperation(
                    name,
                    call,
                    self._task_manager,
                    description=describe_tool_call(name, args),
                    to_output=to_output,
                )
                self._current_op = op
                try:
                    outcome = await op.run()
                finally:
                    self._current_op = None
        except asyncio.CancelledError:
            raise
        except ToolExecutionError as exc:
            logger.warning("Tool %s failed: %s", name, exc.reason)
            return f"Error: {exc.reason}", True
        except Exception as exc:
            logger.warning("Tool %s raised %s", name, type(exc).__name__, exc_info=True)
            return f"Error: {type(exc).__name__}: {exc}", True

        if isinstance(outcome, BackgroundTask):
            invocation.status = InvocationStatus.BACKGROUNDED
            return (
                f"Tool moved to background as task {outcome.id}; "
                "its output will be available when the task finishes.",
                False,
            )
        return outcome.output, outcome.is_error

    async def _complete_invocation(
        self, invocation: ToolInvocation, output: str, is_error: bool,
    ) -> ToolResultBlock:
        invocation.result = output
        invocation.is_error = is_error
        invocation.ended_at = _utcnow()
        invocation.truncated = len(output) > self._config.tool_result_truncate_chars
        if invocation.status not in (InvocationStatus.DENIED, InvocationStatus.BACKGROUNDED):
            invocation.status = InvocationStatus.COMPLETED
        if invocation.history_id is not None:
            self._history.end_tool_use(invocation.history_id, output, is_error)
        await fire_callback(self._callbacks.on_tool_result, invocation, label="on_tool_result")
        return ToolResultBlock(
            tool_use_id=invocation.invocation_id,
            content=output,
            is_error=is_error,
        )

    def _mark_cancelled(self, invocation: ToolInvocation, reason: str) -> None:
        invocation.status = InvocationStatus.CANCELLED
        invocation.result = reason
        invocation.is_error = True
        invocation.ended_at = _utcnow()
        if invocation.history_id is not None:
            self._history.end_tool_use(invocation.history_id, reason, True)

    # ── Helpers ──

    async def _end_cancelled(self, result: TurnResult) -> TurnResult:
        self._transition(TurnState.CANCELLED)
        result.state = TurnState.CANCELLED
        logger.info(
            "Turn %d cancelled after %d iteration(s)",
            self._turn_count, self._iteration,
        )
        await fire_callback(
            self._callbacks.on_turn_complete, result, label="on_turn_complete",
        )
        return result

    def _abandon(self, result: TurnResult) -> None:
        """Settle a turn interrupted by an exception from outside the engine."""
        if self._state in TERMINAL_TURN_STATES or self._state == TurnState.IDLE:
            return
        interrupted = self._state
        if self._token is not None:
            self._token.cancel("Turn interrupted")
        self._transition(TurnState.CANCELLED)
        result.state = TurnState.CANCELLED
        logger.warning(
            "Turn %d interrupted in state %s", self._turn_count, interrupted.value,
        )

    def _transition(self, new_state: TurnState) -> None:
        validate_transition(self._state, new_state)
        old = self._state
        self._state = new_state
        logger.debug("Turn state %s -> %s", old.value, new_state.value)

    def _flush_rules(self) -> None:
        if self._rule_store is None:
            return
        self._rule_store.save(self._permissions.persistent_rules())

    @staticmethod
    def _user_content(user_input: str | list[Any]) -> list[Any]:
        if isinstance(user_input, str):
            return [TextBlock(text=user_input)]
        blocks: list[Any] = []
        for item in user_input:
            if isinstance(item, (TextBlock, ImageBlock)):
                blocks.append(item)
            elif isinstance(item, str):
                blocks.append(TextBlock(text=item))
            elif isinstance(item, dict) and item.get("type") == "text":
                blocks.append(TextBlock(text=str(item.get("text", ""))))
            elif isinstance(item, dict) and item.get("type") == "image":
                source = item.get("source") if isinstance(item.get("source"), dict) else item
                blocks.append(ImageBlock(
                    data=str(source.get("data", "")),
                    media_type=str(source.get("media_type", "image/png")),
                ))
            else:
                raise TypeError(f"Unsupported user content block: {item!r}")
        return blocks
