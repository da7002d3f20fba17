"""Output formatting utilities for the CLI."""

from __future__ import annotations

import json
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

import questionary
from prompt_toolkit.styles import Style
from rich.console import Console
from rich.table import Table
from rich.theme import Theme

_THEME = Theme(
    {
        "ok": "bold green",
        "warn": "yellow",
        "err": "bold red",
        "title": "bold cyan",
        "meta": "dim",
    }
)

console = Console(theme=_THEME)


def _prompt_style(accent: str, extra: Mapping[str, str] | None = None) -> Style:
    """Questionary (prompt_toolkit) style with one accent color."""
    rules = {
        "qmark": accent,
        "question": f"bold {accent}",
        "answer": f"bold {accent}",
        "pointer": f"bold {accent}",
        "instruction": "ansibrightblack",
    }
    rules.update(extra or {})
    return Style.from_dict(rules)


_SELECT_STYLE = _prompt_style(
    "ansibrightcyan",
    {
        "highlighted": "bold ansibrightyellow",
        "selected": "bold ansibrightyellow",
        "checkbox": "ansibrightblack",
        "checkbox-selected": "bold ansibrightyellow",
    },
)
_CONFIRM_STYLE = _prompt_style("ansibrightred", {"error": "bold ansired"})

_OK_STATES = {"SUCCESS"}
_FAILED_STATES = {"FAILED", "ERROR", "CANCELLED", "DEAD", "FAIL"}


def status_style(status: str) -> str:
    """Return the theme style used to render a job, statement or session state."""
    value = status.upper()
    if value in _OK_STATES:
        return "ok"
    if value in _FAILED_STATES:
        return "err"
    return "warn"


@dataclass(frozen=True)
class Out:
    """Output formatter for CLI messages and tables."""

    def _q_try(self, fn, *args, **kwargs):
        """Call questionary prompts and drop unsupported kwargs on older versions."""
        try:
            return fn(*args, **kwargs)
        except TypeError:
            for k in ("pointer", "checked_icon", "unchecked_icon", "auto_enter"):
                kwargs.pop(k, None)
            return fn(*args, **kwargs)

    def _q(self, message: str) -> str:
        """Prefix Questionary prompts to keep them recognizable."""
        return f"[sparkdispatch] {message}"

    def info(self, msg: str) -> None:
        """Print an info message."""
        console.print(f"[title]›[/] {msg}")

    @contextmanager
    def status(self, msg: str):
        """Show a transient status spinner while work is in progress."""
        with console.status(msg, spinner="dots"):
            yield

    def success(self, msg: str) -> None:
        """Print a success message."""
        console.print(f"[ok]✓[/] {msg}")

    def warn(self, msg: str) -> None:
        """Print a warning message."""
        console.print(f"[warn]⚠[/] {msg}")

    def error(self, msg: str) -> None:
        """Print an error message."""
        console.print(f"[err]✗[/] {msg}")

    def header(self, title: str) -> None:
        """Print a header message."""
        console.print(f"[title]{title}[/]")

    def kv(self, items: Mapping[str, Any]) -> None:
        """Print key-value pairs, skipping None values."""
        for k, v in items.items():
            if v is None:
                continue
            console.print(f"[meta]{k}[/]: {v}")

    def select_many(self, message: str, choices: list[questionary.Choice]) -> list[Any]:
        """Prompt the user to select multiple items; returns the chosen values."""
        if not choices:
            return []

        prompt = self._q_try(
            questionary.checkbox,
            self._q(message),
            choices=choices,
            style=_SELECT_STYLE,
            qmark="✦",
            instruction="Use ↑/↓, space, a (all), i (invert), enter",
            pointer="❯",
            checked_icon="▣",
            unchecked_icon="▢",
        )
        return list(prompt.ask() or [])

    def confirm(self, message: str, *, default: bool = False) -> bool:
        """
        Ask the user for confirmation using a standardized Questionary prompt.

        Args:
            message: Confirmation question shown to the user.
            default: Default answer if the user just presses enter.

        Returns:
            True if the user confirms, False otherwise.
        """
        console.print("[meta]Use y/n then Enter[/]")

        prompt = self._q_try(
            questionary.confirm,
            self._q(message),
            default=default,
            style=_CONFIRM_STYLE,
            qmark="✦",
            auto_enter=False,
        )
        return bool(prompt.ask())

    def status_document(self, document: Mapping[str, Any], title: str = "Query status") -> None:
        """
        Render a status document.

        Expects the `status` / `error` fields and an optional `data` payload.
        """
        status = str(document.get("status", ""))
        style = status_style(status)
        t = Table(title=title, show_lines=False)
        t.add_column("Field", style="meta", no_wrap=True)
        t.add_column("Value")
        t.add_row("status", f"[{style}]{status}[/{style}]")
        t.add_row("error", str(document.get("error") or ""))
        if "data" in document:
            t.add_row("data", json.dumps(document["data"], indent=2, default=str))
        console.print(t)

    def sessions_table(self, sessions: Iterable[Any], title: str = "Sessions") -> None:
        """
        Expects objects with .session_id .data_source .job_id .state .statements()
        (like sparkdispatch.core.session.Session)
        """
        t = Table(title=title, show_lines=False)
        t.add_column("Session ID", style="ok", no_wrap=True)
        t.add_column("Data source")
        t.add_column("Job ID", style="meta")
        t.add_column("State")
        t.add_column("Statements", justify="right")

        for s in sessions:
            style = status_style(s.state.value)
            t.add_row(
                str(s.session_id),
                s.data_source,
                str(s.job_id or ""),
                f"[{style}]{s.state.value}[/{style}]",
                str(len(s.statements())),
            )

        console.print(t)

    def statements_table(self, statements: Iterable[Any], title: str = "Statements") -> None:
        """
        Expects objects with .statement_id .lang .query .state .error
        (like sparkdispatch.core.session.Statement)
        """
        t = Table(title=title, show_lines=False)
        t.add_column("Statement ID", style="ok", no_wrap=True)
        t.add_column("Lang", style="meta")
        t.add_column("Query")
        t.add_column("State")
        t.add_column("Error", style="err")

        for st in statements:
            style = status_style(st.state.value)
            t.add_row(
                str(st.statement_id),
                st.lang,
                st.query,
                f"[{style}]{st.state.value}[/{style}]",
                st.error,
            )

        console.print(t)


out = Out()
