"""
Base Command Class

Every pbdeploy command is a BaseCommand subclass wrapped by a click function.
The base owns settings, the per-operation logger, output in human or JSON
form, and the mapping from exceptions to exit codes.
"""

import json
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from rich.console import Console

from pbdeploy.core.config_loader import Settings, load_settings
from pbdeploy.exceptions import PBDeployError
from pbdeploy.logger import DeployLogger

EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


class BaseCommand(ABC):
    """
    Abstract base command.

    In JSON mode nothing but the JSON document is written to stdout: no
    logger is created and the print helpers are silent.
    """

    def __init__(self, verbose: bool = False, json_output: bool = False):
        self.verbose = verbose
        self.json_output = json_output
        self.console = Console()
        self.logger: Optional[DeployLogger] = None
        self._settings: Optional[Settings] = None

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = load_settings()
        return self._settings

    def init_logger(self, subject: str, command_name: str) -> Optional[DeployLogger]:
        """
        Open the log file for this run (None in JSON mode).

        Args:
            subject: Server or app name
            command_name: Operation recorded in the file name
        """
        if self.json_output:
            return None
        self.logger = DeployLogger(
            subject, command_name, verbose=self.verbose, log_root=self.settings.log_root
        )
        return self.logger

    # Output

    def output_json(self, data: Any, exit_code: int = 0) -> None:
        print(json.dumps(data, indent=2, default=str))
        if exit_code:
            raise SystemExit(exit_code)

    def output_json_error(self, error: str, details: Optional[Dict[str, Any]] = None) -> None:
        payload: Dict[str, Any] = {"error": error}
        if details:
            payload["details"] = details
        self.output_json(payload, exit_code=EXIT_FAILURE)

    def _say(self, markup: str) -> None:
        if not self.json_output:
            self.console.print(markup)

    def print_success(self, message: str) -> None:
        self._say(f"[green]✓ {message}[/green]")

    def print_error(self, message: str) -> None:
        self._say(f"[red]✗ {message}[/red]")

    def print_warning(self, message: str) -> None:
        self._say(f"[yellow]⚠ {message}[/yellow]")

    def print_dim(self, message: str) -> None:
        self._say(f"[dim]{message}[/dim]")

    def confirm(self, question: str, default: bool = False) -> bool:
        """Ask a yes/no question on the terminal; an empty answer means default."""
        hint = "Y/n" if default else "y/N"
        self.console.print(f"{question} [bold bright_white]\\[{hint}][/bold bright_white]: ", end="")
        answer = input().strip().lower()
        if not answer:
            return default
        return answer in ("y", "yes")

    def _logs_hint(self) -> None:
        if self.logger and self.logger.log_path:
            self.console.print(f"[dim]Logs saved to:[/dim] {self.logger.log_path}\n")

    # Execution

    @abstractmethod
    def execute(self, **kwargs) -> None:
        """Command logic, implemented by subclasses."""

    def _fail(self, message: str, context: Optional[str], details: Dict[str, Any]) -> None:
        if self.json_output:
            self.output_json_error(message, details)
        if self.logger:
            # The logger prints the error itself
            self.logger.log_error(message, context=context)
        else:
            self.console.print(f"\n[bold red]✗ {message}[/bold red]")
            if context:
                self.console.print(f"[dim]{context}[/dim]")
        self.console.print()
        self._logs_hint()
        raise SystemExit(EXIT_FAILURE)

    def run(self, **kwargs) -> None:
        """
        Run execute() and turn failures into exit codes.

        PBDeployError and unexpected exceptions exit 1, Ctrl-C exits 130.
        The log file is closed in every case.
        """
        try:
            self.execute(**kwargs)
        except KeyboardInterrupt:
            self.console.print("\n[yellow]⚠️  Operation cancelled by user[/yellow]")
            if self.logger:
                self.logger.log_error("Operation cancelled by user")
            self._logs_hint()
            raise SystemExit(EXIT_INTERRUPTED)
        except SystemExit:
            raise
        except PBDeployError as e:
            self._fail(e.message, e.context, {"type": type(e).__name__, "context": e.context})
        except Exception as e:
            error_type = type(e).__name__
            self._fail(f"{error_type}: {e}", None, {"type": error_type})
        finally:
            if self.logger:
                self.logger.close()
