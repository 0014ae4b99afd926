"""
Notification port

Long operations stream ProgressEvents to a ProgressEmitter keyed by
subscription (server_setup_<id>, server_security_<id>,
deployment_progress_<id>). The transport behind the emitter is not the
engine's concern.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from rich.console import Console

from pbdeploy.exceptions import StepFailedError
from pbdeploy.logger import DeployLogger
from pbdeploy.models.progress import ProgressEvent, ProgressStatus

Step = Tuple[str, str, Callable[[], Awaitable[None]]]


class ProgressEmitter(ABC):
    """Receives progress events from background operations."""

    @abstractmethod
    def emit(self, subscription: str, event: ProgressEvent) -> None:
        """Publish one event. Must not block."""
        pass


class MemoryEmitter(ProgressEmitter):
    """Keeps every event in memory, grouped by subscription."""

    def __init__(self):
        self.events: Dict[str, List[ProgressEvent]] = defaultdict(list)

    def emit(self, subscription: str, event: ProgressEvent) -> None:
        self.events[subscription].append(event)

    def events_for(self, subscription: str) -> List[ProgressEvent]:
        return list(self.events.get(subscription, []))

    def last(self, subscription: str) -> Optional[ProgressEvent]:
        events = self.events.get(subscription)
        return events[-1] if events else None


class ConsoleEmitter(ProgressEmitter):
    """Renders events on a rich console."""

    STYLES = {
        ProgressStatus.RUNNING: "[color(214)]▶[/color(214)]",
        ProgressStatus.SUCCESS: "[green]✓[/green]",
        ProgressStatus.FAILED: "[red]✗[/red]",
    }

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def emit(self, subscription: str, event: ProgressEvent) -> None:
        marker = self.STYLES[event.status]
        self.console.print(
            f"{marker} [dim]{event.progress_pct:>3}%[/dim] {event.message}"
        )
        if event.detail and event.status == ProgressStatus.FAILED:
            self.console.print(f"    [color(208)]{event.detail}[/color(208)]")


class FanoutEmitter(ProgressEmitter):
    """Forwards every event to several emitters."""

    def __init__(self, *emitters: ProgressEmitter):
        self.emitters = list(emitters)

    def emit(self, subscription: str, event: ProgressEvent) -> None:
        for emitter in self.emitters:
            emitter.emit(subscription, event)


class ProgressReporter:
    """
    Emits the event sequence of one multi-step operation.

    Step i of n reports running at i*100/n and success at (i+1)*100/n.
    The sequence always ends with a 'complete' or 'failed' event.
    """

    def __init__(
        self,
        emitter: Optional[ProgressEmitter],
        subscription: str,
        logger: Optional[DeployLogger] = None,
    ):
        self.emitter = emitter
        self.subscription = subscription
        self.logger = logger
        self.progress_pct = 0
        self.finished = False

    def emit(
        self,
        step: str,
        status: ProgressStatus,
        message: str,
        progress_pct: Optional[int] = None,
        detail: Optional[str] = None,
    ) -> ProgressEvent:
        if progress_pct is not None:
            self.progress_pct = progress_pct
        event = ProgressEvent(
            step=step,
            status=status,
            message=message,
            progress_pct=self.progress_pct,
            detail=detail,
        )
        if self.emitter:
            self.emitter.emit(self.subscription, event)
        return event

    def init(self, message: str) -> None:
        self.emit("init", ProgressStatus.RUNNING, message, 0)

    def complete(self, message: str) -> None:
        self.finished = True
        self.emit("complete", ProgressStatus.SUCCESS, message, 100)

    def fail(self, message: str, detail: Optional[str] = None) -> None:
        self.finished = True
        self.emit("failed", ProgressStatus.FAILED, message, detail=detail)

    async def run_steps(self, steps: Sequence[Step]) -> None:
        """
        Run steps in order, stopping at the first failure.

        Raises:
            StepFailedError: wrapping the failing step's exception
        """
        total = len(steps)
        for index, (name, description, action) in enumerate(steps):
            self.emit(name, ProgressStatus.RUNNING, description, index * 100 // total)
            if self.logger:
                self.logger.step(description)

            try:
                await action()
            except asyncio.CancelledError:
                self.emit(name, ProgressStatus.FAILED, f"{description} cancelled")
                raise
            except Exception as e:
                self.emit(
                    name,
                    ProgressStatus.FAILED,
                    f"{description} failed",
                    detail=str(e),
                )
                raise StepFailedError(name, e) from e

            self.emit(
                name,
                ProgressStatus.SUCCESS,
                f"{description} completed",
                (index + 1) * 100 // total,
            )
            if self.logger:
                self.logger.success(f"{description} completed")
