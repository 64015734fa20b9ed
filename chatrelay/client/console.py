"""Line-oriented console chat front-end.

Reads prompts from stdin, streams the agent's reply to the terminal
through rich, and maps a handful of slash commands onto the
ConversationController.
"""
from __future__ import annotations

import asyncio
import logging

from rich.console import Console
from rich.markdown import Markdown
from rich.table import Table
from rich.text import Text

from chatrelay.client.connection import RelayConnection
from chatrelay.client.controller import ConversationController
from chatrelay.client.timeline import collect_tool_results, summarize_tool_activity
from chatrelay.engine.errors import RelayConnectionError
from chatrelay.shared.models.message import MessageRole

logger = logging.getLogger(__name__)

HELP = """\
/abort          stop the running reply
/rewind N       drop everything from your N-th message (1-based) onward
/sessions       list stored sessions for this directory
/load ID        open a stored session
/new            start a fresh conversation
/model NAME     switch model for the next message
/quit           leave
"""


def _esc(text: str) -> str:
    """Escape Rich markup characters in dynamic content."""
    return text.replace("[", "\\[")


class ConsoleChat:
    def __init__(
        self,
        connection: RelayConnection,
        *,
        cwd: str,
        model: str | None = None,
        console: Console | None = None,
    ) -> None:
        self._conn = connection
        self._console = console or Console()
        self.controller = ConversationController(
            connection, cwd=cwd, model=model, listener=self._on_change,
        )
        self._printed = 0
        self._stream_printed = 0
        self._notices_seen = 0

    # ── Rendering ──

    def _on_change(self, what: str) -> None:
        ctl = self.controller
        if what == "stream":
            fresh = ctl.streaming_text[self._stream_printed:]
            if fresh:
                self._console.print(Text(fresh), end="")
                self._stream_printed = len(ctl.streaming_text)
        elif what == "timeline":
            if self._printed > len(ctl.messages):
                self._printed = 0
            self._render_new_messages()
        elif what == "notice":
            for notice in ctl.notices[self._notices_seen:]:
                self._console.print(f"[yellow]! {_esc(notice)}[/yellow]")
            self._notices_seen = len(ctl.notices)
        elif what == "usage":
            u = ctl.usage
            self._console.print(
                f"[dim]tokens in={u.input_tokens} out={u.output_tokens} "
                f"cache_read={u.cache_read_tokens} cost=${u.total_cost_usd:.4f}[/dim]"
            )
            self._render_tool_summary()

    def _render_new_messages(self) -> None:
        ctl = self.controller
        for index in range(self._printed, len(ctl.messages)):
            message = ctl.messages[index]
            if message.role is MessageRole.ASSISTANT:
                if self._stream_printed:
                    self._console.print()
                elif message.text:
                    self._console.print(Markdown(message.text))
                self._stream_printed = 0
                for tool_use in message.tool_uses:
                    self._console.print(f"[cyan]> {_esc(tool_use.name)}[/cyan]")
            elif message.tool_results:
                for block in message.tool_results:
                    style = "red" if block.is_error else "dim"
                    self._console.print(f"[{style}]  < {'error' if block.is_error else 'done'}[/{style}]")
            elif message.uuid:
                # Typed bubbles have no uuid; stored turns do.
                self._console.print(f"[bold green]you:[/bold green] {_esc(message.text)}")
        self._printed = len(ctl.messages)

    def _render_tool_summary(self) -> None:
        """One line of tool activity since the latest user turn."""
        ctl = self.controller
        start = next(
            (i for i in range(len(ctl.messages) - 1, -1, -1) if ctl.messages[i].is_user_turn),
            0,
        )
        summary = summarize_tool_activity(ctl.messages, start)
        if summary.total:
            self._console.print(
                f"[dim]tools: {_esc(summary.label())} "
                f"({summary.succeeded} ok, {summary.failed} failed)[/dim]"
            )

    def _print_history_tools(self) -> None:
        ctl = self.controller
        for index, message in enumerate(ctl.messages):
            results = collect_tool_results(ctl.messages, index)
            for tool_use in message.tool_uses:
                result = results.get(tool_use.id)
                if result is not None and result.is_error:
                    self._console.print(f"[red]{_esc(tool_use.name)} failed: {_esc(result.content[:200])}[/red]")

    # ── Commands ──

    async def _list_sessions(self) -> None:
        sessions = await self._conn.list_sessions(self.controller.cwd)
        if not sessions:
            self._console.print("[dim]No stored sessions.[/dim]")
            return
        table = Table("id", "title", "updated")
        for item in sessions:
            table.add_row(item["id"], item["title"], item["updatedAt"])
        self._console.print(table)

    async def _load(self, session_id: str) -> None:
        entries = await self._conn.get_messages(session_id, self.controller.cwd)
        if not entries:
            self._console.print(f"[yellow]No messages in session {_esc(session_id)}[/yellow]")
            return
        self._printed = 0
        if not self.controller.load_history(session_id, entries):
            self._console.print("[yellow]Cannot load while a reply is streaming[/yellow]")
            return
        self._print_history_tools()

    async def _rewind(self, arg: str) -> None:
        try:
            ordinal = int(arg)
        except ValueError:
            self._console.print("[yellow]usage: /rewind N[/yellow]")
            return
        turns = [m for m in self.controller.messages if m.is_user_turn]
        if not 1 <= ordinal <= len(turns):
            self._console.print(f"[yellow]No message #{ordinal}[/yellow]")
            return
        if await self.controller.rewind(turns[ordinal - 1].id, ordinal - 1):
            self._printed = len(self.controller.messages)
            self._console.print(f"[green]Rewound to before message #{ordinal}[/green]")

    async def handle_line(self, line: str) -> bool:
        """Process one input line. Returns False when the user quits."""
        command, _, arg = line.strip().partition(" ")
        if command == "/quit":
            return False
        if command == "/help":
            self._console.print(HELP)
        elif command == "/abort":
            await self.controller.abort()
        elif command == "/rewind":
            await self._rewind(arg.strip())
        elif command == "/sessions":
            await self._list_sessions()
        elif command == "/load" and arg.strip():
            await self._load(arg.strip())
        elif command == "/new":
            if self.controller.new_conversation():
                self._printed = 0
        elif command == "/model" and arg.strip():
            self.controller.model = arg.strip()
        elif line.strip():
            if not await self.controller.send_message(line):
                self._console.print(f"[dim](queued, {len(self.controller.queued)} waiting)[/dim]")
        return True

    async def _pump_events(self) -> None:
        async for event in self._conn.events():
            await self.controller.handle_event(event)

    async def run(self) -> None:
        self._console.print(f"[bold]chatrelay[/bold] in {_esc(self.controller.cwd)}; /help for commands")
        pump = asyncio.create_task(self._pump_events())
        try:
            while not pump.done():
                try:
                    line = await asyncio.to_thread(input, "")
                except EOFError:
                    break
                try:
                    if not await self.handle_line(line):
                        break
                except RelayConnectionError as exc:
                    self._console.print(f"[red]{_esc(str(exc))}[/red]")
        finally:
            await self.controller.abort()
            pump.cancel()
            await asyncio.gather(pump, return_exceptions=True)


async def run_console(base_url: str, *, cwd: str, model: str | None = None) -> int:
    console = Console()
    try:
        async with RelayConnection(base_url) as conn:
            await ConsoleChat(conn, cwd=cwd, model=model, console=console).run()
    except RelayConnectionError as exc:
        console.print(f"[red]{_esc(str(exc))}[/red]")
        return 1
    return 0
