"""Terminal UI utilities for sparkdispatch."""

from __future__ import annotations

import questionary

from sparkdispatch.cli.common.output import out
from sparkdispatch.core.session import Statement

_MAX_QUERY_WIDTH = 72


def _truncate(text: str, max_len: int) -> str:
    """Return text capped at max_len characters using an ASCII ellipsis."""
    if max_len <= 3 or len(text) <= max_len:
        return text[:max_len]
    return f"{text[: max_len - 3]}..."


def _statement_choice_title(statement: Statement, *, query_width: int) -> str:
    """Format one statement as `<query>  [<state>]` with an aligned state column."""
    query = _truncate(" ".join(statement.query.split()), _MAX_QUERY_WIDTH)
    return f"{query.ljust(query_width)}  [{statement.state.value}]"


def select_statements(statements: list[Statement]) -> list[Statement]:
    """Display a checkbox prompt to select statements from a list.

    Args:
        statements: Statements to choose from.

    Returns:
        The selected statements, or an empty list if none selected.
    """
    shown = [_truncate(" ".join(s.query.split()), _MAX_QUERY_WIDTH) for s in statements]
    query_width = max((len(q) for q in shown), default=0)

    choices = [
        questionary.Choice(
            title=_statement_choice_title(statement, query_width=query_width),
            value=statement,
        )
        for statement in statements
    ]
    return out.select_many("Select statements:", choices)
