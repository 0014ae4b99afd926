"""
Server Command Base Class

Base class for commands that talk to managed servers.
Provides the state store and a connection pool per invocation.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional

from .base_command import BaseCommand
from pbdeploy.database import get_session_factory
from pbdeploy.services import (
    CommandExecutor,
    ConnectionPool,
    BackgroundTaskRunner,
    ConsoleEmitter,
    MemoryEmitter,
    ProgressEmitter,
    StateService,
    TaskHandle,
    TaskStatus,
)


class ServerCommand(BaseCommand):
    """
    Base class for server and app commands.

    Provides:
    - Lazily opened StateService
    - A fresh ConnectionPool around each async operation
    - Progress rendering matched to the output mode
    """

    def __init__(self, verbose: bool = False, json_output: bool = False):
        super().__init__(verbose=verbose, json_output=json_output)
        self._state: Optional[StateService] = None

    @property
    def state(self) -> StateService:
        if self._state is None:
            self._state = StateService(get_session_factory(self.settings.resolved_database_url))
        return self._state

    def make_emitter(self) -> ProgressEmitter:
        """Console progress unless output must stay machine-readable."""
        if self.json_output:
            return MemoryEmitter()
        return ConsoleEmitter(self.console)

    def run_async(self, operation: Callable[[CommandExecutor], Awaitable[Any]]) -> Any:
        """
        Run operation(executor) on a new event loop.

        The pool is shut down afterwards, also when the operation fails.
        """

        async def runner():
            async with ConnectionPool(self.settings.pool, logger=self.logger) as pool:
                executor = CommandExecutor(pool, self.settings.executor, self.logger)
                return await operation(executor)

        return asyncio.run(runner())

    def run_in_background(
        self, start: Callable[[CommandExecutor, BackgroundTaskRunner], TaskHandle]
    ) -> TaskHandle:
        """
        Submit the task start(executor, runner) returns and wait for it.

        Ctrl-C cancels the task and waits until it has ended.

        Raises:
            The task's own error when it failed
        """

        async def operation(executor):
            runner = BackgroundTaskRunner(self.logger)
            handle = start(executor, runner)
            try:
                await runner.wait(handle)
            except asyncio.CancelledError:
                runner.cancel(handle)
                await runner.wait(handle)
                raise
            return handle

        handle = self.run_async(operation)
        if handle.status == TaskStatus.FAILED:
            raise handle.error
        return handle
