"""Main Textual application for the cwt TUI."""

from __future__ import annotations

import asyncio
import logging
import os
import threading

from rich.markup import escape

from textual import events, work
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.timer import Timer
from textual.widgets import Footer, Input, Static, Tab, Tabs

from cwt.config import CwtConfig
from cwt.errors import CwtError, MergeConflictError, NotFoundError
from cwt.pty.manager import PTYManager
from cwt.pty.terminal import PyteTerminal
from cwt.session.wire import EventType, Wire, WireEvent
from cwt.tui.render import key_to_bytes, render_snapshot
from cwt.worktree.manager import WorktreeManager
from cwt.worktree.resolver import run_merge_resolver
from cwt.worktree.state import AgentStatus

logger = logging.getLogger(__name__)

MAIN_SESSION = "main"
_TAB_PREFIX = "tab-"


def _tab_id(session_id: str) -> str:
    return f"{_TAB_PREFIX}{session_id}"


def _session_id(tab_id: str) -> str:
    return tab_id[len(_TAB_PREFIX):]


class TUILogHandler(logging.Handler):
    """Logging handler that captures the last log message for the TUI status bar.

    Instead of writing to stderr (which corrupts the Textual display),
    this handler stores the most recent log record and triggers a
    status bar refresh on the app.
    """

    def __init__(self, app: CwtApp) -> None:
        super().__init__()
        self._app = app
        self.last_message: str = ""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.last_message = self.format(record)
            # Git work runs in worker threads; only those may use
            # call_from_thread.
            if threading.current_thread() is threading.main_thread():
                self._app.call_later(self._app._update_status)
            else:
                self._app.call_from_thread(self._app._update_status)
        except Exception:
            pass  # Never let logging crash the TUI


class AgentTabs(Tabs):
    """Tab bar that never takes focus, so arrow keys reach the terminal."""

    can_focus = False


class TerminalView(Static, can_focus=True):
    """Shows the active session's screen and forwards keystrokes to it."""

    BINDINGS = [
        # Shadow the app's ctrl+c so it interrupts the child instead.
        Binding("ctrl+c", "interrupt", show=False),
    ]

    def action_interrupt(self) -> None:
        self.app.send_to_active(b"\x03")

    def on_key(self, event: events.Key) -> None:
        data = key_to_bytes(event.key, event.character)
        if data is None:
            return
        event.stop()
        event.prevent_default()
        self.app.send_to_active(data)

    def on_resize(self, event: events.Resize) -> None:
        self.app.resize_sessions(event.size.height, event.size.width)


class CwtApp(App):
    """cwt TUI — one tab per agent session plus the repository's own."""

    TITLE = "cwt"
    CSS = """
    #tabs {
        dock: top;
    }

    #terminal {
        height: 1fr;
        padding: 0;
    }

    #task-input {
        dock: bottom;
        display: none;
    }

    #task-input.visible {
        display: block;
    }

    #status-bar {
        dock: bottom;
        height: 1;
        background: $surface;
        color: $text-muted;
        padding: 0 1;
    }
    """

    BINDINGS = [
        Binding("alt+left", "previous_tab", "Prev", priority=True),
        Binding("alt+right", "next_tab", "Next", priority=True),
        Binding("ctrl+n", "new_agent", "New", priority=True),
        Binding("ctrl+w", "close_tab", "Close", priority=True),
        Binding("ctrl+g", "merge_agent", "Merge", priority=True),
        Binding("ctrl+q", "quit", "Quit", priority=True),
    ]

    def __init__(
        self,
        manager: WorktreeManager,
        config: CwtConfig | None = None,
        wire: Wire | None = None,
        ptys: PTYManager | None = None,
    ) -> None:
        super().__init__()
        self.manager = manager
        self.config = config or manager.config
        self.wire = wire or Wire()
        self.ptys = ptys or PTYManager.from_config(self.config, wire=self.wire)
        self._active: str | None = None
        self._dirty: set[str] = set()
        self._message: str = ""
        self._log_handler: TUILogHandler | None = None
        self._tick_timer: Timer | None = None

    def compose(self) -> ComposeResult:
        yield AgentTabs(id="tabs")
        yield TerminalView(id="terminal")
        yield Input(placeholder="Task for the new agent (Esc to cancel)", id="task-input")
        yield Static(id="status-bar")
        yield Footer()

    def on_mount(self) -> None:
        self.sub_title = self.manager.repo_root
        self._install_log_handler()
        self._update_status()
        self._listen_wire()
        self._start_sessions()
        self._tick_timer = self.set_interval(self.config.tick_interval, self._tick)
        self.query_one(TerminalView).focus()

    async def on_unmount(self) -> None:
        await self.ptys.stop_all()
        self.wire.close()
        if self._log_handler is not None:
            logging.getLogger().removeHandler(self._log_handler)

    def _install_log_handler(self) -> None:
        root = logging.getLogger()
        for handler in root.handlers[:]:
            root.removeHandler(handler)
        self._log_handler = TUILogHandler(self)
        self._log_handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
        root.addHandler(self._log_handler)
        logging.getLogger("git").setLevel(logging.WARNING)

    # --- Status bar ---

    def _update_status(self) -> None:
        try:
            status = self.query_one("#status-bar", Static)
        except Exception:
            return
        parts = [f"Tab: {escape(self._active or '-')}", f"Sessions: {len(self.ptys)}"]
        if self._active and self._active != MAIN_SESSION:
            agent = self.manager.get_agent(self._active)
            if agent is not None:
                parts.append(f"Status: {agent.status.value}")
        message = self._message
        if not message and self._log_handler and self._log_handler.last_message:
            message = self._log_handler.last_message
        if message:
            if len(message) > 80:
                message = message[:77] + "..."
            parts.append(f"[dim]{escape(message)}[/dim]")
        status.update(" | ".join(parts))

    def _show(self, message: str) -> None:
        self._message = message
        self._update_status()

    def _show_error(self, error: Exception) -> None:
        self._show(f"Error: {error}")

    # --- Wire ---

    @work(exclusive=True)
    async def _listen_wire(self) -> None:
        queue = self.wire.subscribe()
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                self._handle_event(event)
        finally:
            self.wire.unsubscribe(queue)

    def _handle_event(self, event: WireEvent) -> None:
        data = event.data
        if event.type == EventType.SESSION_OUTPUT:
            self._dirty.add(data["session_id"])
        elif event.type == EventType.SESSION_EXIT:
            code = data.get("exit_code")
            code_str = str(code) if code is not None else "?"
            self._dirty.add(data["session_id"])
            self._show(f"{data.get('title') or data['session_id']} exited (code={code_str})")
        elif event.type == EventType.AGENT_STATUS:
            self._show(f"{data['agent_id']}: {data['status']}")
        elif event.type == EventType.ERROR:
            self._show(f"Error: {data.get('error', '')}")
        elif event.type == EventType.STATUS:
            self._show(data.get("message", ""))

    # --- Terminal ---

    def _tick(self) -> None:
        active = self._active
        if active is None or active not in self._dirty:
            return
        self._dirty.discard(active)
        self._redraw()

    def _redraw(self) -> None:
        view = self.query_one(TerminalView)
        session = self.ptys.get(self._active) if self._active else None
        if session is None:
            view.update("")
            return
        cursor = None
        if isinstance(session.terminal, PyteTerminal) and session.is_running:
            cursor = session.terminal.cursor
        view.update(render_snapshot(session.snapshot(), cursor))

    def send_to_active(self, data: bytes) -> None:
        if self._active is None:
            return
        try:
            self.ptys.write(self._active, data)
        except CwtError as e:
            self._show_error(e)

    def resize_sessions(self, rows: int, cols: int) -> None:
        if rows <= 0 or cols <= 0:
            return
        self.ptys.resize_all(rows, cols)
        self._dirty.update(self.ptys.ids())

    # --- Tabs ---

    async def _add_tab(self, session_id: str, label: str) -> None:
        tabs = self.query_one(AgentTabs)
        await tabs.add_tab(Tab(label, id=_tab_id(session_id)))
        tabs.active = _tab_id(session_id)

    async def _remove_tab(self, session_id: str) -> None:
        await self.query_one(AgentTabs).remove_tab(_tab_id(session_id))
        self._dirty.discard(session_id)

    def on_tabs_tab_activated(self, event: Tabs.TabActivated) -> None:
        if event.tab is None or event.tab.id is None:
            self._active = None
        else:
            self._active = _session_id(event.tab.id)
        self._redraw()
        self._update_status()

    def on_tabs_cleared(self, event: Tabs.Cleared) -> None:
        self._active = None
        self._redraw()

    @work(exclusive=True, group="startup")
    async def _start_sessions(self) -> None:
        """Open the main tab, then reattach every agent still running."""
        try:
            await self.ptys.spawn(MAIN_SESSION, self.manager.repo_root, "main")
            await self._add_tab(MAIN_SESSION, "main")
        except CwtError as e:
            self._show_error(e)

        for agent in self.manager.state.agents_by_status(AgentStatus.RUNNING):
            if not os.path.isdir(agent.worktree):
                logger.warning("Worktree for %s is missing: %s", agent.id, agent.worktree)
                continue
            try:
                await self.ptys.spawn(agent.id, agent.worktree, agent.task)
            except CwtError as e:
                self._show_error(e)
                continue
            await self._add_tab(agent.id, agent.id)

    # --- Actions ---

    def action_previous_tab(self) -> None:
        self.query_one(AgentTabs).action_previous_tab()

    def action_next_tab(self) -> None:
        self.query_one(AgentTabs).action_next_tab()

    def action_new_agent(self) -> None:
        prompt = self.query_one("#task-input", Input)
        prompt.value = ""
        prompt.add_class("visible")
        prompt.focus()

    def _hide_prompt(self) -> None:
        self.query_one("#task-input", Input).remove_class("visible")
        self.query_one(TerminalView).focus()

    def on_input_submitted(self, event: Input.Submitted) -> None:
        task = event.value.strip()
        self._hide_prompt()
        if task:
            self._create_agent(task)

    def on_key(self, event: events.Key) -> None:
        if event.key == "escape" and self.query_one("#task-input", Input).has_focus:
            event.stop()
            self._hide_prompt()

    @work(exclusive=False)
    async def _create_agent(self, task: str) -> None:
        try:
            agent = await asyncio.to_thread(self.manager.create_branch, task)
        except CwtError as e:
            self._show_error(e)
            return

        try:
            await self.ptys.spawn(agent.id, agent.worktree, task)
        except CwtError as e:
            logger.error("Could not start a session for %s: %s", agent.id, e)
            self._show_error(e)
            try:
                await asyncio.to_thread(self.manager.mark_failed, agent.id)
                await asyncio.to_thread(self.manager.remove_branch, agent.id)
            except CwtError as cleanup_error:
                logger.warning("Cleanup of %s failed: %s", agent.id, cleanup_error)
            return

        await self._add_tab(agent.id, agent.id)
        self.wire.send_agent_status(agent.id, agent.status.value)

    def action_close_tab(self) -> None:
        if self._active is None:
            return
        if self._active == MAIN_SESSION:
            self._show("The main tab stays open; ctrl+q quits")
            return
        self._close_agent(self._active)

    @work(exclusive=False)
    async def _close_agent(self, agent_id: str) -> None:
        await self._kill_session(agent_id)
        try:
            await asyncio.to_thread(self.manager.remove_branch, agent_id)
        except CwtError as e:
            self._show_error(e)
        await self._remove_tab(agent_id)
        self._show(f"Closed {agent_id}")

    async def _kill_session(self, session_id: str) -> None:
        try:
            await self.ptys.kill(session_id)
        except NotFoundError:
            logger.debug("No live session for %s", session_id)

    def action_merge_agent(self) -> None:
        if self._active is None or self._active == MAIN_SESSION:
            self._show("Select an agent tab to merge")
            return
        self._merge_agent(self._active)

    @work(exclusive=True, group="merge")
    async def _merge_agent(self, agent_id: str) -> None:
        await self._kill_session(agent_id)
        try:
            record = await asyncio.to_thread(self.manager.merge, agent_id)
        except MergeConflictError as e:
            if not self.config.merge_command:
                self._show_error(e)
                return
            self._show(f"Conflicts merging {agent_id}; running merge collaborator")
            try:
                agent = await run_merge_resolver(
                    self.manager,
                    agent_id,
                    self.config.merge_command,
                    timeout=self.config.merge_timeout,
                )
            except CwtError as resolver_error:
                self._show_error(resolver_error)
                return
            self.wire.send_agent_status(agent_id, agent.status.value)
            if agent.status != AgentStatus.MERGED:
                return
        except CwtError as e:
            self._show_error(e)
            return
        else:
            self.wire.send_agent_status(agent_id, AgentStatus.MERGED.value)
            logger.info("Merged %s at %s", agent_id, record.merge_commit[:8])

        # The merge record stays in the history; the worktree and branch go.
        try:
            await asyncio.to_thread(self.manager.remove_branch, agent_id)
        except CwtError as e:
            self._show_error(e)
        await self._remove_tab(agent_id)

    async def action_quit(self) -> None:
        self._show("Stopping sessions...")
        await self.ptys.stop_all()
        self.exit()
