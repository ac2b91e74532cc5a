"""PTY process management — managed pseudo-terminal sessions.

Every agent (and the repository's own shell tab) runs its program in a
managed PTY session with process group isolation, a terminal model that
keeps the rendered screen, and automatic cleanup.
"""

from cwt.pty.session import PTYSession, PTYStatus
from cwt.pty.manager import PTYManager
from cwt.pty.buffer import TailBuffer
from cwt.pty.terminal import Cell, PyteTerminal, TerminalModel, create_terminal

__all__ = [
    "PTYSession",
    "PTYStatus",
    "PTYManager",
    "TailBuffer",
    "Cell",
    "PyteTerminal",
    "TerminalModel",
    "create_terminal",
]
