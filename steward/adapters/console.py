"""Terminal presenter built on rich.

ConsolePresenter implements the TurnCallbacks surface for a plain
terminal: streamed text is printed as it arrives, tool calls and results
are shown as dim status lines, and permission prompts are asked with
rich.prompt on a worker thread so background tasks keep running while
the human decides.
"""
from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table
from rich.text import Text

from steward.engine.callbacks import TurnCallbacks
from steward.engine.models import (
    InvocationStatus,
    PermissionReply,
    PermissionRequest,
    PermissionRule,
    RuleDecision,
    ToolInvocation,
    TurnResult,
    TurnState,
)
from steward.engine.permissions import PermissionEngine
from steward.engine.tool_history import ToolHistory

logger = logging.getLogger(__name__)

# Prompt key -> reply
PROMPT_CHOICES: dict[str, PermissionReply] = {
    "y": PermissionReply.ALLOW,
    "n": PermissionReply.DENY,
    "s": PermissionReply.ALLOW_SESSION,
    "x": PermissionReply.DENY_SESSION,
    "a": PermissionReply.ALLOW_ALWAYS,
    "d": PermissionReply.DENY_ALWAYS,
}

_PROMPT_TEXT = (
    "[bold]Allow?[/bold] "
    "y=yes  n=no  s=yes for session  x=no for session  a=always  d=never"
)

_RESULT_PREVIEW_CHARS = 200

def _format_args(args: dict) -> str:
    try:
        rendered = json.dumps(args, default=str)
    except (TypeError, ValueError):
        rendered = str(args)
    return rendered if len(rendered) <= 80 else rendered[:77] + "..."


class ConsolePresenter:
    """Renders a turn to a rich Console and answers permission prompts."""

    def __init__(
        self,
        console: Console | None = None,
        *,
        ask: Callable[[PermissionRequest], str] | None = None,
        show_usage: bool = True,
    ) -> None:
        self.console = console or Console()
        self._ask = ask or self._prompt
        self._show_usage = show_usage
        self._midline = False

    def callbacks(self) -> TurnCallbacks:
        return TurnCallbacks(
            on_turn_start=self.on_turn_start,
            on_text=self.on_text,
            on_tool_use=self.on_tool_use,
            on_permission_request=self.on_permission_request,
            on_tool_result=self.on_tool_result,
            on_turn_complete=self.on_turn_complete,
            on_error=self.on_error,
        )

    # ── Turn callbacks ──

    def on_turn_start(self, turn: int) -> None:
        logger.debug("Rendering turn %d", turn)
        self._midline = False

    def on_text(self, text: str) -> None:
        self.console.print(text, end="", markup=False, highlight=False, soft_wrap=True)
        self._midline = not text.endswith("\n")

    def on_tool_use(self, invocation: ToolInvocation) -> None:
        self._end_line()
        line = Text("● ", style="cyan")
        line.append(invocation.name, style="bold")
        line.append(f"({_format_args(invocation.arguments)})", style="dim")
        self.console.print(line)

    async def on_permission_request(self, request: PermissionRequest) -> PermissionReply:
        self._end_line()
        self.console.print(Panel(
            Text(request.description or request.tool),
            title="Permission required",
            border_style="yellow",
            box=box.ROUNDED,
        ))
        choice = await asyncio.to_thread(self._ask, request)
        reply = PROMPT_CHOICES.get((choice or "").strip().lower(), PermissionReply.DENY)
        logger.debug("Permission prompt for %s answered %s", request.tool, reply.value)
        return reply

    def on_tool_result(self, invocation: ToolInvocation) -> None:
        result = invocation.result or ""
        if invocation.status == InvocationStatus.DENIED:
            style, marker = "yellow", "✗"
        elif invocation.is_error:
            style, marker = "red", "✗"
        else:
            style, marker = "green", "✓"
        preview = result if len(result) <= _RESULT_PREVIEW_CHARS else (
            result[:_RESULT_PREVIEW_CHARS] + "..."
        )
        line = Text(f"  {marker} ", style=style)
        line.append(preview.replace("\n", " "), style="dim")
        if invocation.truncated:
            line.append(" (truncated)", style="dim italic")
        self.console.print(line)

    def on_turn_complete(self, result: TurnResult) -> None:
        self._end_line()
        if result.state == TurnState.CANCELLED:
            self.console.print(Text("Interrupted", style="yellow"))
        if result.notice:
            self.console.print(Text(result.notice, style="yellow"))
        if self._show_usage:
            self.console.print(Text(
                f"tokens: {result.usage.input_tokens} in / "
                f"{result.usage.output_tokens} out",
                style="dim",
            ))

    def on_error(self, exc: BaseException) -> None:
        self._end_line()
        self.console.print(Panel(Text(str(exc)), title="Error", border_style="red"))

    # ── Listings ──

    def render_rules(self, rules: list[PermissionRule]) -> None:
        if not rules:
            self.console.print(Text("  No permission rules configured", style="dim"))
            return
        table = Table(title="Permission Rules", box=box.SIMPLE)
        table.add_column("#", justify="right")
        table.add_column("Decision")
        table.add_column("Rule")
        table.add_column("Scope", style="dim")
        table.add_column("Used", justify="right", style="dim")
        for i, rule in enumerate(rules, start=1):
            allowed = rule.decision == RuleDecision.ALLOW
            table.add_row(
                str(i),
                Text("✓ allow" if allowed else "✗ deny", style="green" if allowed else "red"),
                PermissionEngine.describe_rule(rule),
                rule.scope or ("persistent" if rule.persistent else "session"),
                str(rule.usage_count),
            )
        self.console.print(table)

    def render_session(self, session: dict[str, list[str]]) -> None:
        allowed = session.get("allowed", [])
        denied = session.get("denied", [])
        if not allowed and not denied:
            self.console.print(Text("  No session permissions recorded", style="dim"))
            return
        for key in allowed:
            self.console.print(Text(f"  ✓ {key}", style="green"))
        for key in denied:
            self.console.print(Text(f"  ✗ {key}", style="red"))

    def render_history(self, history: ToolHistory) -> None:
        for record in history.visible_tool_uses():
            if not record.finished:
                marker, style = "…", "cyan"
            elif record.is_error:
                marker, style = "✗", "red"
            else:
                marker, style = "✓", "green"
            line = Text(f"  {marker} ", style=style)
            line.append(record.name, style="bold")
            if record.duration is not None:
                line.append(f" {record.duration:.1f}s", style="dim")
            self.console.print(line)
        if history.has_hidden:
            self.console.print(Text(
                f"  ... {history.hidden_count} more tool call(s) hidden",
                style="dim",
            ))

    # ── Internals ──

    def _end_line(self) -> None:
        if self._midline:
            self.console.print()
            self._midline = False

    def _prompt(self, request: PermissionRequest) -> str:
        return Prompt.ask(
            _PROMPT_TEXT,
            choices=list(PROMPT_CHOICES),
            default="n",
            console=self.console,
            show_choices=False,
        )
