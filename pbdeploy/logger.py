"""
Logging system for pbdeploy

Every long operation (setup, lockdown, deploy, rollback, doctor) gets its own
log file under logs/<subject>/<date>/. The console shows a compact step view
unless verbose output is requested.
"""

import re
import time
from datetime import datetime
from pathlib import Path
from typing import List, Optional, TextIO

from rich.console import Console

console = Console()

ANSI_ESCAPE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")

RULE_WIDTH = 80
REDACTED = "********"

LEVEL_STYLES = {
    "ERROR": "red",
    "WARNING": "yellow",
    "DEBUG": "dim",
}


class DeployLogger:
    """
    File log plus console view for one operation against one subject.

    Lines are written as they happen, so a second terminal can follow the
    file with tail -f. Registered secrets never reach the file or the console.
    """

    def __init__(
        self,
        subject: str,
        operation: str,
        verbose: bool = False,
        log_root: Optional[Path] = None,
        quiet: bool = False,
    ):
        """
        Args:
            subject: Server or app name
            operation: Operation name (setup, lockdown, deploy, ...)
            verbose: Echo every log line and command output to the console
            log_root: Base directory (default: <project root>/logs)
            quiet: Never print to the console
        """
        self.subject = subject
        self.operation = operation
        self.verbose = verbose
        self.quiet = quiet
        self.current_step = ""
        self.has_errors = False
        self._secrets: List[str] = []
        self._started = time.monotonic()

        if log_root is None:
            from pbdeploy.utils import get_project_root

            log_root = get_project_root() / "logs"

        now = datetime.now()
        log_dir = Path(log_root) / subject / now.strftime("%Y-%m-%d")
        log_dir.mkdir(parents=True, exist_ok=True)
        self.log_path: Optional[Path] = log_dir / f"{now.strftime('%H-%M-%S')}_{operation}.log"

        # Line buffered so tail -f sees each line
        self.log_file: Optional[TextIO] = open(self.log_path, "a", buffering=1, encoding="utf-8")
        self._write(
            self._banner(
                "=",
                "pbdeploy operation log",
                f"Subject:   {subject}",
                f"Operation: {operation}",
                f"Started:   {now.isoformat(timespec='seconds')}",
            )
        )

    # Output plumbing

    @staticmethod
    def _banner(char: str, *lines: str) -> str:
        rule = char * RULE_WIDTH
        return "\n".join([rule, *lines, rule]) + "\n\n"

    def redact(self, secret: str) -> None:
        """Replace secret with a placeholder in everything logged from now on."""
        if secret and secret not in self._secrets:
            self._secrets.append(secret)

    def _clean(self, text: str) -> str:
        for secret in self._secrets:
            text = text.replace(secret, REDACTED)
        return text

    def _write(self, text: str) -> None:
        if self.log_file:
            self.log_file.write(self._clean(text))

    def _print(self, message: str) -> None:
        if not self.quiet:
            console.print(self._clean(message))

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self._started

    # Logging API

    def log(self, message: str, level: str = "INFO"):
        """
        Write one line to the file; echo it when verbose.

        Args:
            message: Text to log
            level: INFO, WARNING, ERROR or DEBUG
        """
        self._write(f"[{datetime.now().strftime('%H:%M:%S')}] [{level}] {message}\n")

        if self.verbose:
            style = LEVEL_STYLES.get(level)
            self._print(f"[{style}]{message}[/{style}]" if style else message)

    def log_command(self, command: str, user: Optional[str] = None):
        """Record a remote command before it runs."""
        self.log(f"Executing: {user + '$ ' if user else ''}{command}", "DEBUG")

    def log_output(self, output: str, stream: str = "stdout"):
        """Record command output, one prefixed line per output line, ANSI codes stripped."""
        if not output:
            return

        text = ANSI_ESCAPE.sub("", output)
        self._write("".join(f"  [{stream}] {line}\n" for line in text.splitlines()))

        if self.verbose:
            self._print(text.rstrip("\n"))

    def log_error(self, error: str, context: Optional[str] = None):
        """
        Record a failure in a block that stands out in the file.

        Args:
            error: What failed
            context: Where or why (failing step, hint)
        """
        self.has_errors = True

        lines = ["ERROR", error]
        if context:
            lines.append(f"Context: {context}")
        self._write(self._banner("!", *lines))

        self._print(f"[bold red]✗ {error}[/bold red]")
        if context:
            self._print(f"  [color(208)]{context}[/color(208)]")

    def step(self, step_name: str):
        self.current_step = step_name
        self.log(f"Step: {step_name}")

        if not self.verbose:
            self._print(f"[color(214)]▶[/color(214)] [white]{step_name}[/white]")

    def success(self, message: str):
        self.log(message)

        if not self.verbose:
            self._print(f"  [dim]✓ {message}[/dim]")

    def warning(self, message: str):
        self.log(message, "WARNING")

        if not self.verbose:
            self._print(f"  [yellow]⚠[/yellow] [dim]{message}[/dim]")

    def close(self):
        """Write the footer and close the file. Safe to call twice."""
        if not self.log_file:
            return
        self._write(
            "\n"
            + self._banner(
                "=",
                f"Completed: {datetime.now().isoformat(timespec='seconds')}",
                f"Duration:  {self.elapsed:.1f}s",
                f"Status:    {'FAILED' if self.has_errors else 'SUCCESS'}",
            )
        )
        self.log_file.close()
        self.log_file = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, _exc_tb):
        if exc_type is not None and exc_type is not SystemExit:
            self.log_error(str(exc_val) or "Operation failed", context=exc_type.__name__)
        self.close()
        return False
