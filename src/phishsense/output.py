"""Rich terminal output renderer for PhishSense."""

from __future__ import annotations

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from phishsense.models import AnalysisResult, EngineStatus, Finding, RiskLevel, Severity


console = Console()

RISK_COLORS = {
    RiskLevel.LOW: "green",
    RiskLevel.MEDIUM: "yellow",
    RiskLevel.HIGH: "bold red",
}

STATUS_SYMBOLS = {
    EngineStatus.COMPLETED: "[green]OK[/green]",
    EngineStatus.SKIPPED: "[yellow]--[/yellow]",
    EngineStatus.ERROR: "[red]ERR[/red]",
}

ENGINE_LABELS = {
    "rules": "Rule Engine",
    "headers": "Header Engine",
    "reputation": "Reputation Engine",
    "behavior": "Behavior Engine",
    "ml": "ML Engine",
    "misc": "Reserved",
}


def render_result(result: AnalysisResult, sender: str = "", subject: str = "", verbose: bool = False) -> None:
    """Print the full Rich-formatted analysis to the terminal.

    Args:
        result: The completed AnalysisResult to render.
        sender: Sender shown in the header panel.
        subject: Subject shown in the header panel.
        verbose: If True, list every finding including low severity ones.
    """
    console.print()
    _render_header(sender, subject, result)
    _render_score_panel(result)
    _render_breakdown_table(result)
    _render_findings(result.findings, verbose)
    console.print()


def _render_header(sender: str, subject: str, result: AnalysisResult) -> None:
    console.print(
        Panel(
            f"[bold]From:[/bold] {escape(sender) or '(none)'}\n"
            f"[bold]Subject:[/bold] {escape(subject) or '(none)'}\n"
            f"[bold]Analyzed in:[/bold] {result.processing_time:.0f} ms",
            title="[bold blue]PhishSense Analysis[/bold blue]",
            border_style="blue",
        )
    )


def _render_score_panel(result: AnalysisResult) -> None:
    """Render the score and risk level."""
    color = RISK_COLORS.get(result.risk_level, "white")
    score_text = Text(f"{result.score:.0f}/100", style=f"bold {color}")
    level_text = Text(f"  {result.risk_level.value} risk - {result.summary}", style=color)
    console.print(Panel(Text.assemble("Score: ", score_text, level_text), border_style=color))


def _render_breakdown_table(result: AnalysisResult) -> None:
    table = Table(title="Engine Breakdown", show_lines=True)
    table.add_column("Status", justify="center", width=6)
    table.add_column("Engine", min_width=20)
    table.add_column("Score", justify="right", width=8)
    table.add_column("Share", justify="right", width=8)

    for key, entry in result.breakdown.items():
        if key == "misc":
            continue
        score_str = f"{entry.score:.0f}" if entry.status == EngineStatus.COMPLETED else "--"
        share_str = f"{entry.percentage:.0f}%" if entry.percentage else "--"
        table.add_row(
            STATUS_SYMBOLS.get(entry.status, "?"),
            ENGINE_LABELS.get(key, key),
            score_str,
            share_str,
        )

    console.print(table)


def _render_findings(findings: list[Finding], verbose: bool) -> None:
    shown = findings if verbose else [f for f in findings if f.severity != Severity.LOW]
    if not shown:
        console.print("[dim]No significant findings.[/dim]")
        return

    lines = []
    for finding in shown:
        color = _severity_color(finding.severity)
        label = escape(f"[{finding.category}]")
        lines.append(f"[{color}]* {label} {escape(finding.text)}[/{color}]")

    console.print(Panel("\n".join(lines), title="[bold]Findings[/bold]", border_style="white"))


def _severity_color(severity: Severity) -> str:
    return {
        Severity.HIGH: "red",
        Severity.MEDIUM: "yellow",
        Severity.LOW: "cyan",
    }.get(severity, "white")
