"""pbdeploy CLI - Doctor command"""

import click
from rich.table import Table

from pbdeploy.base import ServerCommand
from pbdeploy.models import DiagnosticReport, DiagnosticStatus, RunStatus, SuggestionPriority
from pbdeploy.services import DiagnosticsEngine

STATUS_MARKERS = {
    DiagnosticStatus.SUCCESS: ("✅", "green"),
    DiagnosticStatus.WARNING: ("⚠️ ", "yellow"),
    DiagnosticStatus.ERROR: ("❌", "red"),
}

PRIORITY_STYLES = {
    SuggestionPriority.CRITICAL: "bold red",
    SuggestionPriority.HIGH: "red",
    SuggestionPriority.MEDIUM: "yellow",
    SuggestionPriority.LOW: "dim",
}

RUN_STYLES = {
    RunStatus.HEALTHY: "green",
    RunStatus.DEGRADED: "yellow",
    RunStatus.ERROR: "red",
}


class DoctorCommand(ServerCommand):
    """SSH access diagnostics for one server."""

    def __init__(self, name: str, fix: bool = False, verbose: bool = False, json_output: bool = False):
        super().__init__(verbose=verbose, json_output=json_output)
        self.name = name
        self.fix = fix

    def execute(self) -> None:
        target = self.state.get_server(self.name)
        logger = self.init_logger(target.name, "doctor")

        async def operation(executor):
            engine = DiagnosticsEngine(executor, self.settings.diagnostics, logger=logger)
            if self.fix:
                return await engine.auto_fix(target)
            return {"applied": [], "failed": [], "after": await engine.diagnose(target)}

        outcome = self.run_async(operation)
        report: DiagnosticReport = outcome["after"]
        exit_code = 1 if report.status == RunStatus.ERROR else 0

        if self.json_output:
            data = report.to_dict()
            if self.fix:
                data["fixes"] = {"applied": outcome["applied"], "failed": outcome["failed"]}
            self.output_json(data, exit_code=exit_code)
            return

        if self.fix:
            self._print_fixes(outcome)
        self._print_report(target.name, report)
        self._logs_hint()
        if exit_code:
            raise SystemExit(exit_code)

    def _print_fixes(self, outcome) -> None:
        if not outcome["applied"] and not outcome["failed"]:
            self.print_dim("No automatic fixes needed")
        for fix in outcome["applied"]:
            self.print_success(f"Applied {fix}")
        for failure in outcome["failed"]:
            self.print_error(f"{failure['fix']} failed: {failure['error']}")
        self.console.print()

    def _print_report(self, name: str, report: DiagnosticReport) -> None:
        table = Table(title=f"SSH Health Report: {name} ({report.host})", title_justify="left", padding=(0, 1))
        table.add_column("Check", style="cyan", no_wrap=True)
        table.add_column("Status")
        table.add_column("Details", style="dim")
        table.add_column("Time", justify="right", style="dim")

        for diagnostic in report.diagnostics:
            marker, color = STATUS_MARKERS[diagnostic.status]
            table.add_row(
                f"{marker} {diagnostic.step}",
                f"[{color}]{diagnostic.status.value}[/{color}]",
                diagnostic.message,
                f"{diagnostic.duration_seconds * 1000:.0f}ms",
            )
        self.console.print(table)

        style = RUN_STYLES[report.status]
        self.console.print(
            f"\nOverall: [{style}]{report.status.value}[/{style}] [dim](pattern: {report.pattern})[/dim]"
        )
        if report.critical_issues:
            self.console.print(f"[bold red]Critical:[/bold red] {', '.join(report.critical_issues)}")

        if not report.suggestions:
            return

        self.console.print("\n[cyan]━━━ Suggestions ━━━[/cyan]")
        for suggestion in report.suggestions:
            style = PRIORITY_STYLES[suggestion.priority]
            auto = " [dim](fixable with --fix)[/dim]" if suggestion.automated else ""
            self.console.print(
                f"[{style}]{suggestion.priority.value.upper():<8}[/{style}] {suggestion.text}{auto}"
            )
            if suggestion.command:
                self.console.print(f"         [cyan]{suggestion.command}[/cyan]")
        self.console.print()


@click.command()
@click.argument("name")
@click.option("--fix", is_flag=True, help="Apply safe local fixes (SSH dir, key permissions, host key)")
@click.option("--verbose", "-v", is_flag=True, help="Show all command output")
@click.option("--json", "json_output", is_flag=True, help="Output in JSON format")
def doctor(name, fix, verbose, json_output):
    """
    Diagnose SSH access to a server

    Checks reachability, the SSH banner, both identities, sudo, sshd
    settings and local SSH files, then suggests fixes. Detects the
    signature of a fail2ban IP ban.

    Examples:
        pbdeploy doctor prod
        pbdeploy doctor prod --fix
        pbdeploy doctor prod --json
    """
    DoctorCommand(name, fix=fix, verbose=verbose, json_output=json_output).run()
