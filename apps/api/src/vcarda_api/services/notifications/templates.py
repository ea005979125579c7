"""Notification templates for balance changes."""

from __future__ import annotations

import html
from dataclasses import dataclass


@dataclass
class RenderedTemplate:
    title: str
    text_body: str
    html_body: str


def _plural(count: int) -> str:
    return "point" if abs(count) == 1 else "points"


def render_points_changed(
    *,
    delta: int,
    new_balance: int,
    program_name: str | None,
    contact_name: str | None,
) -> RenderedTemplate:
    greeting = f"Hi {contact_name}," if contact_name else "Hi there,"
    program_label = program_name or "your loyalty program"

    if delta > 0:
        title = "Points Added"
        headline = f"You've earned {delta} {_plural(delta)} in {program_label}!"
    else:
        title = "Points Redeemed"
        headline = f"You've redeemed {-delta} {_plural(delta)} from {program_label}."
    balance_line = f"Your balance is now {new_balance} {_plural(new_balance)}."

    text_body = "\n".join([greeting, "", headline, balance_line, "", "The Vcarda Team"])
    html_body = f"""<html>
  <body>
    <p>{html.escape(greeting)}</p>
    <p>{html.escape(headline)}</p>
    <p>{html.escape(balance_line)}</p>
    <p>The Vcarda Team</p>
  </body>
</html>"""
    return RenderedTemplate(title=title, text_body=text_body, html_body=html_body)
