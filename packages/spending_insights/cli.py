"""CLI for the ``spending_insights`` package.

Exposes callable command handlers (``cmd_analyze``, ``cmd_regenerate_insights``,
``cmd_review_story``) and a Typer-based console interface. Provider keys are
loaded from a local ``.env`` with ``python-dotenv`` before settings are
resolved. Business logic lives in :mod:`spending_insights.api`.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated, Any

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .api import analyze_response, regenerate_insights_response, review_story
from .logging_setup import configure_logging

console = Console()


# ---- Rendering ---------------------------------------------------------------


def _money(value: float) -> str:
    return f"${value:,.2f}"


def _print_bullets(title: str, lines: list[str]) -> None:
    if not lines:
        return
    console.print(f"[bold]{title}[/bold]")
    for line in lines:
        console.print(f"  • {line}")


def render_analysis(response: dict[str, Any]) -> None:
    ai = response["ai"]
    console.print(
        f"[cyan]{response['filename'] or 'transactions'}[/cyan]: "
        f"{response['transactionCount']} transactions "
        f"({ai['periodStart']} to {ai['periodEnd']})"
    )

    table = Table(title="Spending by category")
    table.add_column("Category")
    table.add_column("Total", justify="right")
    table.add_column("Top merchants")
    for c in ai["categories"]:
        merchants = ", ".join(m["merchant"] for m in c["merchants"])
        table.add_row(c["category"], _money(c["total"]), merchants)
    console.print(table)

    totals = Table(show_header=False, box=None)
    totals.add_column(justify="left")
    totals.add_column(justify="right")
    for label, key in (
        ("Gross spend", "grossSpend"),
        ("Refunds", "refundsTotal"),
        ("Net spend", "totalExpenses"),
        ("Bill payments", "billPaymentsTotal"),
        ("Payroll", "payrollTotal"),
        ("Transfers", "transfersTotal"),
        ("Investments", "investmentsTotal"),
        ("Net cash flow", "netCashFlow"),
    ):
        totals.add_row(label, _money(ai[key]))
    console.print(totals)

    render_insights(ai["insights"])
    for w in response.get("warnings", []):
        console.print(f"[yellow]Warning:[/yellow] {w}")


def render_insights(insights: dict[str, Any]) -> None:
    console.print(
        f"[bold]Top category:[/bold] {insights['topSpendingCategory']}    "
        f"[bold]Top merchant:[/bold] {insights['topMerchant']}"
    )
    _print_bullets("Highlights", insights["highlights"])
    _print_bullets("Concentration", insights["concentrationNotes"])
    _print_bullets("Ideas", insights["optimizationIdeas"])
    _print_bullets("Anomalies", insights["anomalies"])


def render_review(review: dict[str, Any]) -> None:
    rating = review["rating"]
    console.print(
        Panel(
            rating.get("one_line_summary", ""),
            title=f"{rating['score_1_to_5']}/5 · {rating['label']}",
            border_style="green" if rating["score_1_to_5"] >= 4 else "red",
        )
    )
    if review.get("jira_comment_md"):
        console.print(review["jira_comment_md"])
    if "error" in review:
        console.print(f"[red]Error:[/red] {review['error']['message']}")


def _render_failure(response: dict[str, Any]) -> None:
    err = response["error"]
    console.print(f"[red]Error:[/red] {err['message']}")
    console.print(f"[dim]{err['hint']}[/dim]")


# ---- Command handlers --------------------------------------------------------


def cmd_analyze(csv_paths: list[Path], *, month: str | None = None, as_json: bool = False) -> int:
    response = analyze_response(csv_paths, month=month)
    if as_json:
        typer.echo(json.dumps(response, indent=2))
    elif response["ok"]:
        render_analysis(response)
    else:
        _render_failure(response)
    return 0 if response["ok"] else 1


def cmd_regenerate_insights(payload_path: Path, *, as_json: bool = False) -> int:
    try:
        payload = json.loads(payload_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        console.print(f"[red]Error reading payload:[/red] {e}")
        return 1
    if not isinstance(payload, dict):
        console.print("[red]Error:[/red] payload must be a JSON object")
        return 1
    response = regenerate_insights_response(payload)
    if as_json:
        typer.echo(json.dumps(response, indent=2))
    elif response["ok"]:
        render_insights(response["insights"])
    else:
        _render_failure(response)
    return 0 if response["ok"] else 1


def cmd_review_story(
    story: str, *, context: str = "", acceptance_criteria: str = "", as_json: bool = False
) -> int:
    review = review_story(story, context=context, acceptance_criteria=acceptance_criteria)
    if as_json:
        typer.echo(json.dumps(review, indent=2))
    else:
        render_review(review)
    return 1 if "error" in review else 0


# ---- Typer-based console interface -------------------------------------------


app = typer.Typer(
    name="spending-insights",
    no_args_is_help=True,
    add_completion=False,
    help=(
        "Categorize bank exports with an LLM and summarize spending. "
        "Loads provider keys from a local .env before running."
    ),
)


@app.command("analyze")
def analyze_cmd(
    csv_paths: Annotated[
        list[Path], typer.Argument(help="One or more CSV exports", exists=True, dir_okay=False)
    ],
    month: Annotated[str | None, typer.Option(help="Only analyze this month (YYYY-MM).")] = None,
    as_json: Annotated[bool, typer.Option("--json", help="Print the raw JSON response.")] = False,
) -> None:
    """Categorize and summarize one or more CSV exports."""

    raise typer.Exit(cmd_analyze(csv_paths, month=month, as_json=as_json))


@app.command("regenerate-insights")
def regenerate_insights_cmd(
    payload_path: Annotated[
        Path, typer.Argument(help="JSON file with an analysis response or its 'ai' block")
    ],
    as_json: Annotated[bool, typer.Option("--json", help="Print the raw JSON response.")] = False,
) -> None:
    """Generate fresh insights for a previously returned (possibly edited) aggregate."""

    raise typer.Exit(cmd_regenerate_insights(payload_path, as_json=as_json))


@app.command("review-story")
def review_story_cmd(
    story: Annotated[str, typer.Option(help="User story / requirement text.")],
    context: Annotated[str, typer.Option(help="Optional product context.")] = "",
    acceptance_criteria: Annotated[
        str, typer.Option("--acceptance-criteria", help="Optional acceptance criteria.")
    ] = "",
    as_json: Annotated[bool, typer.Option("--json", help="Print the raw JSON response.")] = False,
) -> None:
    """Review a requirement for clarity, completeness and testability."""

    raise typer.Exit(
        cmd_review_story(
            story, context=context, acceptance_criteria=acceptance_criteria, as_json=as_json
        )
    )


@app.callback()
def _root(
    log_level: Annotated[
        str | None,
        typer.Option(
            "--log-level",
            help="Logging level (e.g. DEBUG). Defaults to SPENDING_INSIGHTS_LOG_LEVEL or INFO.",
        ),
    ] = None,
) -> None:
    """Load ``.env`` from the working directory and configure logging."""

    # override=False keeps variables already set in the shell.
    load_dotenv(dotenv_path=Path.cwd() / ".env", override=False)
    configure_logging(log_level)


if __name__ == "__main__":  # pragma: no cover
    app()
