"""Turn orchestrator: loop, permission gating, cancellation, detaching."""

from __future__ import annotations

import asyncio

import pytest

from fakes import ScriptedProvider, make_registry, text_reply, tool_reply, wait_until
from steward.engine.callbacks import TurnCallbacks
from steward.engine.config import EngineConfig
from steward.engine.errors import ProviderError, TurnInProgressError
from steward.engine.models import (
    DecisionSource,
    ImageBlock,
    InvocationStatus,
    PermissionReply,
    PermissionRule,
    RuleDecision,
    TextBlock,
    ToolResultBlock,
    TurnState,
)
from steward.engine.orchestrator import (
    DENIED_BY_USER,
    TurnOrchestrator,
    describe_tool_call,
)
from steward.engine.permissions import PermissionEngine
from steward.engine.providers.base import StreamEnd, TextDelta, ToolCallProposed, UsageUpdate
from steward.engine.tasks import TaskManager
from steward.engine.tool_registry import ToolSpec


def _orchestrator(provider, registry=None, **kwargs) -> TurnOrchestrator:
    return TurnOrchestrator(provider, registry or make_registry(), **kwargs)


def _tool_results(message) -> list[ToolResultBlock]:
    return [b for b in message.content if isinstance(b, ToolResultBlock)]


# ── Basic loop ──


@pytest.mark.asyncio
async def test_text_only_turn_fires_callbacks_in_order():
    events: list[str] = []
    callbacks = TurnCallbacks(
        on_turn_start=lambda n: events.append(f"start:{n}"),
        on_text=lambda t: events.append(f"text:{t}"),
        on_usage=lambda i, o: events.append(f"usage:{i}/{o}"),
        on_turn_complete=lambda r: events.append(f"complete:{r.state.value}"),
    )
    provider = ScriptedProvider([text_reply("Hello!")])
    orch = _orchestrator(provider, callbacks=callbacks)

    result = await orch.run("hi")

    assert result.state == TurnState.COMPLETE
    assert result.response == "Hello!"
    assert result.iterations == 1
    assert events == ["start:1", "text:Hello!", "usage:10/5", "complete:complete"]
    assert [m.role for m in orch.messages] == ["user", "assistant"]
    assert orch.state == TurnState.COMPLETE
    assert orch.is_running is False


@pytest.mark.asyncio
async def test_usage_accumulates_deltas_across_turns():
    provider = ScriptedProvider([
        text_reply("a", 10, 5),
        text_reply("b", 7, 3),
    ])
    orch = _orchestrator(provider)

    first = await orch.run("one")
    second = await orch.run("two")

    assert (first.usage.input_tokens, first.usage.output_tokens) == (10, 5)
    assert (second.usage.input_tokens, second.usage.output_tokens) == (7, 3)
    assert orch.usage.total_tokens == 25

    orch.clear_history()
    assert orch.messages == []
    assert orch.usage.total_tokens == 0
    assert orch.state == TurnState.IDLE


@pytest.mark.asyncio
async def test_tool_results_fed_back_to_provider():
    log: list[str] = []
    provider = ScriptedProvider([
        tool_reply(("c1", "read_file", {"path": "a.txt"})),
        text_reply("done"),
    ])
    config = EngineConfig(allow_read_only=True)
    orch = _orchestrator(provider, make_registry(log), config=config)

    result = await orch.run("read it")

    assert result.state == TurnState.COMPLETE
    assert log == ["read:a.txt"]
    assert len(provider.calls) == 2
    [block] = _tool_results(provider.calls[1][-1])
    assert block.tool_use_id == "c1"
    assert block.content == "contents of a.txt"
    assert block.is_error is False
    [invocation] = result.invocations
    assert invocation.status == InvocationStatus.COMPLETED
    assert invocation.decision.source == DecisionSource.READ_ONLY


@pytest.mark.asyncio
async def test_tool_calls_run_sequentially_in_proposal_order():
    log: list[str] = []

    async def ask(request):
        log.append(f"ask:{request.args['command']}")
        await asyncio.sleep(0)
        return True

    callbacks = TurnCallbacks(
        on_permission_request=ask,
        on_tool_result=lambda inv: log.append(f"result:{inv.arguments['command']}"),
    )
    provider = ScriptedProvider([
        tool_reply(
            ("c1", "bash", {"command": "make build"}),
            ("c2", "bash", {"command": "make test"}),
        ),
        text_reply("ok"),
    ])
    orch = _orchestrator(provider, make_registry(log), callbacks=callbacks)

    await orch.run("build and test")

    assert log == [
        "ask:make build", "exec:make build", "result:make build",
        "ask:make test", "exec:make test", "result:make test",
    ]
    blocks = _tool_results(provider.calls[1][-1])
    assert [b.tool_use_id for b in blocks] == ["c1", "c2"]


# ── Failures fed back to the model ──


@pytest.mark.asyncio
async def test_unknown_tool_becomes_error_result():
    asked: list[str] = []
    provider = ScriptedProvider([
        tool_reply(("c1", "teleport", {})),
        text_reply("sorry"),
    ])
    orch = _orchestrator(
        provider, callbacks=TurnCallbacks(on_permission_request=lambda r: asked.append(r.tool)),
    )

    result = await orch.run("go")

    assert result.state == TurnState.COMPLETE
    assert asked == []
    [block] = _tool_results(provider.calls[1][-1])
    assert block.is_error is True
    assert "Unknown tool: teleport" in block.content


@pytest.mark.asyncio
async def test_tool_exception_becomes_error_result():
    registry = make_registry()

    async def broken(args):
        raise OSError("no such device")

    registry.register(ToolSpec("broken", requires_permission=False), broken)
    provider = ScriptedProvider([tool_reply(("c1", "broken", {})), text_reply("hmm")])
    orch = _orchestrator(provider, registry)

    result = await orch.run("try it")

    assert result.state == TurnState.COMPLETE
    [block] = _tool_results(provider.calls[1][-1])
    assert block.is_error is True
    assert "no such device" in block.content


@pytest.mark.asyncio
async def test_user_denial_skips_execution():
    log: list[str] = []
    provider = ScriptedProvider([
        tool_reply(("c1", "bash", {"command": "rm -rf build"})),
        text_reply("ok, I won't"),
    ])
    orch = _orchestrator(
        provider, make_registry(log),
        callbacks=TurnCallbacks(on_permission_request=lambda r: False),
    )

    result = await orch.run("clean")

    assert log == []
    [block] = _tool_results(provider.calls[1][-1])
    assert block.content == DENIED_BY_USER
    assert block.is_error is True
    assert result.invocations[0].status == InvocationStatus.DENIED
    assert result.state == TurnState.COMPLETE


@pytest.mark.asyncio
async def test_rule_denial_does_not_prompt():
    asked: list[str] = []
    permissions = PermissionEngine()
    permissions.add_rule(PermissionRule(tool="bash", action="rm", decision=RuleDecision.DENY))
    provider = ScriptedProvider([
        tool_reply(("c1", "bash", {"command": "rm x"})),
        text_reply("blocked"),
    ])
    orch = _orchestrator(
        provider,
        permissions=permissions,
        callbacks=TurnCallbacks(on_permission_request=lambda r: asked.append(r.tool)),
    )

    await orch.run("remove")

    assert asked == []
    [block] = _tool_results(provider.calls[1][-1])
    assert block.content.startswith("Permission denied: Matched rule: bash:rm")


@pytest.mark.asyncio
async def test_missing_permission_handler_denies():
    log: list[str] = []
    provider = ScriptedProvider([
        tool_reply(("c1", "bash", {"command": "ls"})),
        text_reply("ok"),
    ])
    orch = _orchestrator(provider, make_registry(log))

    await orch.run("list")

    assert log == []
    [block] = _tool_results(provider.calls[1][-1])
    assert "No permission handler configured" in block.content


@pytest.mark.asyncio
async def test_raising_permission_handler_denies():
    log: list[str] = []

    def explode(request):
        raise RuntimeError("ui crashed")

    provider = ScriptedProvider([
        tool_reply(("c1", "bash", {"command": "ls"})),
        text_reply("ok"),
    ])
    orch = _orchestrator(
        provider, make_registry(log),
        callbacks=TurnCallbacks(on_permission_request=explode),
    )

    await orch.run("list")

    assert log == []
    [block] = _tool_results(provider.calls[1][-1])
    assert block.content == DENIED_BY_USER


@pytest.mark.asyncio
async def test_ungated_tool_skips_permission_engine():
    registry = make_registry()

    async def now(args):
        return "12:00"

    registry.register(ToolSpec("clock", requires_permission=False), now)
    provider = ScriptedProvider([tool_reply(("c1", "clock", {})), text_reply("noon")])
    orch = _orchestrator(provider, registry)

    result = await orch.run("time?")

    assert result.invocations[0].decision.source == DecisionSource.UNGATED
    assert _tool_results(provider.calls[1][-1])[0].content == "12:00"


# ── Remembered answers ──


class _RecordingStore:
    def __init__(self) -> None:
        self.saved: list[list[PermissionRule]] = []

    def save(self, rules):
        self.saved.append(list(rules))
        return True


@pytest.mark.asyncio
async def test_always_answer_is_remembered_and_flushed():
    asked: list[str] = []

    def ask(request):
        asked.append(request.args["command"])
        return PermissionReply.ALLOW_ALWAYS

    store = _RecordingStore()
    provider = ScriptedProvider([
        tool_reply(("c1", "bash", {"command": "npm test"})),
        tool_reply(("c2", "bash", {"command": "npm run lint"})),
        text_reply("all green"),
    ])
    orch = _orchestrator(
        provider, callbacks=TurnCallbacks(on_permission_request=ask), rule_store=store,
    )

    await orch.run("check")

    assert asked == ["npm test"]
    assert len(store.saved) == 1
    [rule] = store.saved[0]
    assert (rule.tool, rule.action, rule.decision) == ("bash", "npm", RuleDecision.ALLOW)
    assert orch.permissions.session_permissions()["allowed"] == ["bash:npm"]


# ── Limits, provider errors, reentrancy ──


@pytest.mark.asyncio
async def test_iteration_limit_ends_turn_with_notice():
    provider = ScriptedProvider([
        tool_reply(("c1", "read_file", {"path": "a"})),
        tool_reply(("c2", "read_file", {"path": "b"})),
    ])
    config = EngineConfig(max_iterations=2, allow_read_only=True)
    orch = _orchestrator(provider, config=config)

    result = await orch.run("loop forever")

    assert result.state == TurnState.COMPLETE
    assert result.limit_reached is True
    assert "Turn limit reached" in result.notice
    assert len(provider.calls) == 2
    assert orch.current_iteration == 2


@pytest.mark.asyncio
async def test_provider_error_surfaces_and_allows_next_turn():
    errors: list[BaseException] = []
    completed: list[object] = []
    provider = ScriptedProvider([ConnectionError("network down"), text_reply("back")])
    orch = _orchestrator(provider, callbacks=TurnCallbacks(
        on_error=errors.append, on_turn_complete=completed.append,
    ))

    with pytest.raises(ProviderError) as excinfo:
        await orch.run("hello?")

    assert "network down" in str(excinfo.value)
    assert orch.state == TurnState.ERROR
    assert len(errors) == 1 and isinstance(errors[0], ProviderError)
    assert completed == []

    result = await orch.run("retry")
    assert result.state == TurnState.COMPLETE


@pytest.mark.asyncio
async def test_run_and_clear_rejected_while_running():
    gate = asyncio.Event()

    async def ask(request):
        await gate.wait()
        return False

    provider = ScriptedProvider([
        tool_reply(("c1", "bash", {"command": "ls"})),
        text_reply("ok"),
    ])
    orch = _orchestrator(provider, callbacks=TurnCallbacks(on_permission_request=ask))
    runner = asyncio.ensure_future(orch.run("first"))
    await wait_until(lambda: orch.state == TurnState.AWAITING_PERMISSION)

    with pytest.raises(TurnInProgressError):
        await orch.run("second")
    with pytest.raises(TurnInProgressError):
        orch.clear_history()

    gate.set()
    result = await runner
    assert result.state == TurnState.COMPLETE


# ── Cancellation ──


@pytest.mark.asyncio
async def test_stop_while_awaiting_permission_cancels_without_new_provider_call():
    log: list[str] = []
    completed: list[object] = []

    async def ask_forever(request):
        await asyncio.Event().wait()

    provider = ScriptedProvider([
        tool_reply(
            ("c1", "bash", {"command": "deploy"}),
            ("c2", "bash", {"command": "notify"}),
        ),
        text_reply("should never be requested"),
    ])
    orch = _orchestrator(provider, make_registry(log), callbacks=TurnCallbacks(
        on_permission_request=ask_forever, on_turn_complete=completed.append,
    ))

    runner = asyncio.ensure_future(orch.run("ship it"))
    await wait_until(lambda: orch.state == TurnState.AWAITING_PERMISSION)
    assert orch.stop() is True
    result = await runner

    assert result.state == TurnState.CANCELLED
    assert len(provider.calls) == 1
    assert log == []
    assert [inv.status for inv in result.invocations] == [
        InvocationStatus.CANCELLED, InvocationStatus.CANCELLED,
    ]
    assert completed == [result]
    # No tool results were appended for the cancelled calls.
    assert [m.role for m in orch.messages] == ["user", "assistant"]


@pytest.mark.asyncio
async def test_stop_during_execution_discards_in_flight_result():
    registry = make_registry()
    orch_ref: list[TurnOrchestrator] = []

    async def stops_turn(args):
        orch_ref[0].stop()
        return "finished anyway"

    registry.register(ToolSpec("long_job", requires_permission=False), stops_turn)
    provider = ScriptedProvider([
        tool_reply(("c1", "long_job", {}), ("c2", "long_job", {})),
        text_reply("unused"),
    ])
    orch = _orchestrator(provider, registry)
    orch_ref.append(orch)

    result = await orch.run("work")

    assert result.state == TurnState.CANCELLED
    assert len(provider.calls) == 1
    first, second = result.invocations
    assert first.status == InvocationStatus.CANCELLED
    assert first.result == "finished anyway"
    assert second.status == InvocationStatus.CANCELLED
    assert orch.messages[-1].role == "assistant"


def test_stop_when_idle_is_noop():
    orch = _orchestrator(ScriptedProvider([]))
    assert orch.stop() is False


@pytest.mark.asyncio
async def test_stop_after_finished_turn_is_noop():
    orch = _orchestrator(ScriptedProvider([text_reply("done")]))
    await orch.run("hi")

    assert orch.stop() is False
    assert orch.state == TurnState.COMPLETE


@pytest.mark.asyncio
async def test_stop_while_streaming_discards_response():
    log: list[str] = []
    texts: list[str] = []
    completed: list[object] = []
    gate = asyncio.Event()
    provider = ScriptedProvider([
        [
            TextDelta("Working on it"),
            gate,
            ToolCallProposed(id="c1", name="bash", arguments={"command": "ls"}),
            UsageUpdate(3, 2),
            StreamEnd("tool_use"),
        ],
        text_reply("never requested"),
    ])
    orch = _orchestrator(provider, make_registry(log), callbacks=TurnCallbacks(
        on_text=texts.append,
        on_permission_request=lambda r: True,
        on_turn_complete=completed.append,
    ))

    runner = asyncio.ensure_future(orch.run("list files"))
    await wait_until(lambda: texts == ["Working on it"])
    assert orch.stop() is True
    gate.set()
    result = await runner

    assert result.state == TurnState.CANCELLED
    assert len(provider.calls) == 1
    assert log == []
    assert result.invocations == []
    assert [m.role for m in orch.messages] == ["user"]
    assert completed == [result]


# ── Cancellation of the task running the turn ──


@pytest.mark.asyncio
async def test_cancelled_run_leaves_orchestrator_usable():
    gate = asyncio.Event()
    provider = ScriptedProvider([
        [TextDelta("partial"), gate, StreamEnd()],
        text_reply("second answer"),
    ])
    texts: list[str] = []
    orch = _orchestrator(provider, callbacks=TurnCallbacks(on_text=texts.append))

    runner = asyncio.ensure_future(orch.run("first"))
    await wait_until(lambda: texts == ["partial"])
    runner.cancel()
    with pytest.raises(asyncio.CancelledError):
        await runner

    assert orch.state == TurnState.CANCELLED
    assert orch.is_running is False

    result = await orch.run("second")

    assert result.state == TurnState.COMPLETE
    assert result.response == "second answer"
    assert [m.role for m in orch.messages] == ["user", "user", "assistant"]


@pytest.mark.asyncio
async def test_cancelled_run_cancels_pending_permission_prompt():
    asked: list[str] = []
    prompt_cancelled = asyncio.Event()

    async def ask(request):
        asked.append(request.tool)
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            prompt_cancelled.set()
            raise

    provider = ScriptedProvider([
        tool_reply(("c1", "bash", {"command": "deploy"})),
        text_reply("after restart"),
    ])
    orch = _orchestrator(provider, callbacks=TurnCallbacks(on_permission_request=ask))

    runner = asyncio.ensure_future(orch.run("ship it"))
    await wait_until(lambda: asked == ["bash"])
    runner.cancel()
    with pytest.raises(asyncio.CancelledError):
        await runner

    await asyncio.wait_for(prompt_cancelled.wait(), timeout=1)
    assert orch.state == TurnState.CANCELLED
    assert orch.stop() is False


@pytest.mark.asyncio
async def test_cancelled_run_cancels_foreground_tool_call():
    started: list[str] = []
    tool_cancelled = asyncio.Event()
    registry = make_registry()

    async def slow(args):
        started.append("slow")
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            tool_cancelled.set()
            raise

    registry.register(ToolSpec("slow", requires_permission=False), slow)
    manager = TaskManager(cleanup_interval_seconds=0)
    provider = ScriptedProvider([tool_reply(("c1", "slow", {})), text_reply("unused")])
    orch = _orchestrator(provider, registry, task_manager=manager)

    runner = asyncio.ensure_future(orch.run("start slow job"))
    await wait_until(lambda: started == ["slow"])
    runner.cancel()
    with pytest.raises(asyncio.CancelledError):
        await runner

    await asyncio.wait_for(tool_cancelled.wait(), timeout=1)
    assert orch.state == TurnState.CANCELLED
    assert manager.get_all_tasks() == []
    await manager.shutdown()


@pytest.mark.asyncio
async def test_rejected_user_content_does_not_start_a_turn():
    orch = _orchestrator(ScriptedProvider([text_reply("ok")]))

    with pytest.raises(TypeError):
        await orch.run([42])

    assert orch.is_running is False
    assert orch.messages == []
    assert orch.state == TurnState.IDLE
    result = await orch.run("valid")
    assert result.state == TurnState.COMPLETE


# ── Detaching a running tool ──


@pytest.mark.asyncio
async def test_detach_current_tool_moves_it_to_task_manager():
    gate = asyncio.Event()
    registry = make_registry()

    async def slow(args):
        await gate.wait()
        return "slow done"

    registry.register(ToolSpec("slow", requires_permission=False), slow)
    manager = TaskManager(cleanup_interval_seconds=0)
    provider = ScriptedProvider([tool_reply(("c1", "slow", {})), text_reply("moving on")])
    orch = _orchestrator(provider, registry, task_manager=manager)

    assert orch.detach_current_tool() is None
    runner = asyncio.ensure_future(orch.run("start slow job"))
    await wait_until(lambda: orch.state == TurnState.EXECUTING)

    task = orch.detach_current_tool()
    assert task is not None
    result = await runner

    assert result.state == TurnState.COMPLETE
    assert result.invocations[0].status == InvocationStatus.BACKGROUNDED
    [block] = _tool_results(provider.calls[1][-1])
    assert task.id in block.content

    gate.set()
    assert await task.wait() == "slow done"
    await manager.shutdown()


# ── Helpers ──


def test_describe_tool_call():
    assert describe_tool_call("bash", {"command": "ls -la"}) == "Run command: ls -la"
    assert describe_tool_call("write_file", {"path": "a.py"}) == "Write file: a.py"
    assert describe_tool_call("edit_file", {"path": "a.py"}) == "Edit file: a.py"
    assert describe_tool_call("delete_file", {"path": "a.py"}) == "Delete file: a.py"
    other = describe_tool_call("grep", {"pattern": "x" * 200})
    assert other.startswith('grep: {"pattern": ')
    assert len(other) == len("grep: ") + 100


@pytest.mark.asyncio
async def test_user_content_blocks_and_set_messages():
    provider = ScriptedProvider([text_reply("nice picture")])
    orch = _orchestrator(provider)

    await orch.run([
        "look at this",
        {"type": "image", "source": {"type": "base64", "media_type": "image/jpeg", "data": "AAA"}},
    ])

    user = orch.messages[0]
    assert isinstance(user.content[0], TextBlock)
    assert isinstance(user.content[1], ImageBlock)
    assert user.content[1].media_type == "image/jpeg"

    snapshot = orch.messages
    orch.set_messages(snapshot[:1])
    assert len(orch.messages) == 1
    assert len(snapshot) == 2
