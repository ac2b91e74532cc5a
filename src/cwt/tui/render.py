"""Glue between Textual and the terminal models: keys in, styled text out."""

from __future__ import annotations

from rich.color import Color, ColorParseError
from rich.style import Style
from rich.text import Text

from cwt.pty.terminal import Cell

# Textual key names -> bytes an xterm would send.
_KEY_BYTES: dict[str, bytes] = {
    "enter": b"\r",
    "tab": b"\t",
    "shift+tab": b"\x1b[Z",
    "backspace": b"\x7f",
    "escape": b"\x1b",
    "up": b"\x1b[A",
    "down": b"\x1b[B",
    "right": b"\x1b[C",
    "left": b"\x1b[D",
    "home": b"\x1b[H",
    "end": b"\x1b[F",
    "pageup": b"\x1b[5~",
    "pagedown": b"\x1b[6~",
    "insert": b"\x1b[2~",
    "delete": b"\x1b[3~",
    "f1": b"\x1bOP",
    "f2": b"\x1bOQ",
    "f3": b"\x1bOR",
    "f4": b"\x1bOS",
}


def key_to_bytes(key: str, character: str | None = None) -> bytes | None:
    """Translate a Textual key event into input for the child, or None."""
    if key in _KEY_BYTES:
        return _KEY_BYTES[key]
    if key.startswith("ctrl+") and len(key) == 6 and "a" <= key[5] <= "z":
        return bytes([ord(key[5]) - ord("a") + 1])
    if character and character.isprintable():
        return character.encode("utf-8")
    return None


def _color(name: str) -> Color | None:
    if name == "default":
        return None
    if len(name) == 6 and all(c in "0123456789abcdefABCDEF" for c in name):
        name = f"#{name}"
    elif name.startswith("bright") and not name.startswith("bright_"):
        name = "bright_" + name[len("bright"):]
    elif name == "brown":
        name = "yellow"
    try:
        return Color.parse(name)
    except ColorParseError:
        return None


def _style(cell: Cell) -> Style:
    return Style(
        color=_color(cell.fg),
        bgcolor=_color(cell.bg),
        bold=cell.bold or None,
        italic=cell.italics or None,
        underline=cell.underscore or None,
        reverse=cell.reverse or None,
    )


def render_snapshot(
    snapshot: list[list[Cell]],
    cursor: tuple[int, int] | None = None,
) -> Text:
    """Build a Rich ``Text`` from a cell grid, merging runs of equal style."""
    text = Text(no_wrap=True, overflow="crop")
    for y, row in enumerate(snapshot):
        if y:
            text.append("\n")
        run: list[str] = []
        run_style: Style | None = None
        for x, cell in enumerate(row):
            style = _style(cell)
            if cursor == (y, x):
                style = style + Style(reverse=not cell.reverse)
            if style != run_style and run:
                text.append("".join(run), run_style)
                run = []
            run_style = style
            run.append(cell.char)
        if run:
            text.append("".join(run), run_style)
    return text
