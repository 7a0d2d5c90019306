"""Interactive chat loop over a tether session.

Input is read with prompt_toolkit while classified output is rendered with
rich from a background task; patch_stdout keeps the two from trampling
each other.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

from prompt_toolkit import PromptSession
from prompt_toolkit.history import InMemoryHistory
from prompt_toolkit.patch_stdout import patch_stdout
from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.table import Table

from tether.core.config import TetherConfig
from tether.core.logging_config import get_logger
from tether.core.pty import BackendStartError
from tether.core.session import ChannelBusyError, Session, SessionLimitError, SessionManager
from tether.core.types import Message, OutputType, SessionEvent, SessionEventType

logger = get_logger(__name__)

PROMPT = "you> "

_OUTPUT_STYLES = {
    OutputType.ERROR: "bold red",
    OutputType.PROGRESS: "dim",
    OutputType.TOOL: "yellow",
    OutputType.STATUS: "cyan",
}


@dataclass
class ChatConsole:
    """Prompt loop bound to one session of a SessionManager.

    Attributes:
        manager: Session registry (started and shut down by run()).
        user_id: User the session belongs to.
        channel_id: Channel the session is bound to.
        console: Rich console used for rendering.
    """

    manager: SessionManager
    user_id: str
    channel_id: str
    console: Console = field(default_factory=lambda: Console(force_terminal=True))
    session: Session | None = field(default=None, init=False)

    @classmethod
    def from_config(cls, config: TetherConfig, user_id: str, channel_id: str) -> ChatConsole:
        return cls(manager=SessionManager(config), user_id=user_id, channel_id=channel_id)

    async def run(self) -> int:
        """Run until :quit or EOF. Returns a process exit status."""
        await self.manager.start()
        try:
            try:
                self.session = await self.manager.get_or_create_session(
                    self.user_id, self.channel_id
                )
            except (BackendStartError, SessionLimitError, ChannelBusyError) as err:
                self.console.print(f"[bold red]Cannot open session:[/] {escape(str(err))}")
                return 1

            self.console.print(
                f"[dim]session {self.session.id} ({self.session.message_count} messages), "
                f":quit to leave[/]"
            )
            events = self.session.subscribe()
            renderer = asyncio.create_task(self._render_loop(events))
            try:
                await self._prompt_loop(self.session)
            finally:
                renderer.cancel()
                self.session.unsubscribe(events)
            return 0
        finally:
            await self.manager.shutdown()

    async def _prompt_loop(self, session: Session) -> None:
        prompt_session: PromptSession[str] = PromptSession(history=InMemoryHistory())
        with patch_stdout(raw=True):
            while True:
                try:
                    text = await prompt_session.prompt_async(PROMPT)
                except KeyboardInterrupt:
                    await session.stop()
                    continue
                except EOFError:
                    break

                if not text.strip():
                    continue

                if text.startswith(":"):
                    if not await self.handle_directive(session, text[1:].strip()):
                        break
                    continue

                try:
                    delivered = await session.send_message(text)
                except BackendStartError as err:
                    self.console.print(f"[bold red]Cannot restart backend:[/] {escape(str(err))}")
                    continue
                if not delivered:
                    self.console.print("[red]Session is not accepting input[/]")

    async def handle_directive(self, session: Session, directive: str) -> bool:
        """Apply a ':' directive. Returns False to leave the loop."""
        name, _, arg = directive.partition(" ")
        arg = arg.strip()

        if name in ("quit", "exit", "q"):
            return False
        elif name == "stop":
            await session.stop()
        elif name == "continue":
            await session.continue_()
        elif name == "regenerate":
            if not await session.regenerate():
                self.console.print("[yellow]Nothing to regenerate[/]")
        elif name == "model" and arg:
            await session.set_model(arg)
            self.console.print(f"[dim]model set to {escape(arg)}[/]")
        elif name == "project" and arg:
            await session.switch_project(arg)
        elif name == "history":
            self.print_history(session)
        elif name in ("first", "prev", "next", "last"):
            move = {
                "first": session.first,
                "prev": session.previous,
                "next": session.next,
                "last": session.last,
            }[name]
            self.print_message(move(), session)
        elif name == "info":
            for key, value in session.debug_info().items():
                self.console.print(f"[dim]{key}:[/] {value}")
        else:
            self.console.print(f"[yellow]Unknown directive:[/] :{escape(directive)}")
        return True

    def print_history(self, session: Session) -> None:
        table = Table(show_header=True, header_style="bold")
        table.add_column("#", justify="right")
        table.add_column("Role")
        table.add_column("Content")
        for index, message in enumerate(session.messages, start=1):
            table.add_row(str(index), message.role.value, escape(message.content[:80]))
        self.console.print(table)

    def print_message(self, message: Message | None, session: Session) -> None:
        if message is None:
            self.console.print("[dim]No messages[/]")
            return
        position = f"{session.current_message_index + 1}/{session.message_count}"
        self.console.print(f"[bold]{message.role.value}[/] [dim]{position}[/]")
        self.console.print(message.content, markup=False)

    def render(self, event: SessionEvent) -> None:
        """Print one session event."""
        if event.type is SessionEventType.OUTPUT and event.output is not None:
            output = event.output
            if output.type is OutputType.RESPONSE:
                if output.content:
                    self.console.print(Markdown(output.content))
                return
            style = _OUTPUT_STYLES[output.type]
            if output.type is OutputType.PROGRESS:
                self.console.print(f"[{style}]{escape(output.content)} ({output.progress}%)[/]")
            elif output.type is OutputType.TOOL:
                self.console.print(f"[{style}]tools: {', '.join(output.tools) or '?'}[/]")
            else:
                self.console.print(f"[{style}]{escape(output.content)}[/]")

        elif event.type is SessionEventType.ERROR:
            self.console.print(f"[bold red]backend error:[/] {escape(event.error or '')}")

        elif event.type is SessionEventType.EXIT:
            self.console.print(f"[bold]process exited[/] (code {event.exit_code})")

        elif event.type is SessionEventType.STATUS and event.status is not None:
            self.console.print(f"[dim]status: {event.status.value}[/]")

    async def _render_loop(self, events: asyncio.Queue[SessionEvent]) -> None:
        while True:
            event = await events.get()
            self.render(event)
