"""
Base manager class for the todo-sync core.

This module provides the lifecycle every long-running component follows:
- initialize -> start -> stop state machine
- Tracked background tasks cancelled on stop
- Periodic task helper with error isolation
- Health checking
"""

from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, List, Callable, Awaitable
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from ..utils.logging import get_logger


class ManagerState(Enum):
    """Manager lifecycle states."""
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


class ManagerError(Exception):
    """Base exception for manager errors."""
    pass


class ManagerNotReadyError(ManagerError):
    """Raised when manager operation is called before initialization."""
    pass


class ManagerAlreadyRunningError(ManagerError):
    """Raised when trying to start an already running manager."""
    pass


@dataclass
class HealthStatus:
    """Health status information."""
    healthy: bool
    last_check: datetime
    details: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


class BaseManager(ABC):
    """
    Abstract base class for manager components.

    Subclasses implement ``_initialize``, ``_start``, ``_stop`` and
    ``_health_check``; background loops go through ``_spawn_periodic`` so
    they are cancelled on stop.
    """

    def __init__(self, name: str):
        """Initialize base manager."""
        self.name = name
        self.logger = get_logger(f"todo-sync.managers.{name}")
        self.state = ManagerState.UNINITIALIZED
        self._health_status = HealthStatus(healthy=True, last_check=datetime.now(timezone.utc))
        self._tasks: List[asyncio.Task] = []

    @property
    def is_ready(self) -> bool:
        """Check if manager is ready for operations."""
        return self.state in (ManagerState.READY, ManagerState.RUNNING)

    @property
    def is_running(self) -> bool:
        """Check if manager is actively running."""
        return self.state == ManagerState.RUNNING

    async def initialize(self) -> None:
        """Perform one-time setup and transition to READY."""
        if self.state not in (ManagerState.UNINITIALIZED, ManagerState.STOPPED):
            raise ManagerError(f"Cannot initialize from state: {self.state}")

        self.state = ManagerState.INITIALIZING
        self.logger.info("initializing_manager")

        try:
            await self._initialize()
        except Exception as e:
            self.state = ManagerState.ERROR
            self.logger.error("initialization_failed", error=str(e), exc_info=True)
            raise ManagerError(f"Failed to initialize {self.name}: {e}") from e

        self.state = ManagerState.READY
        self.logger.info("manager_initialized")

    async def start(self) -> None:
        """Begin background operations."""
        if not self.is_ready:
            raise ManagerNotReadyError(f"Manager {self.name} not ready")

        if self.is_running:
            raise ManagerAlreadyRunningError(f"Manager {self.name} already running")

        self.state = ManagerState.STARTING
        self.logger.info("starting_manager")

        try:
            await self._start()
        except Exception as e:
            self.state = ManagerState.ERROR
            self.logger.error("start_failed", error=str(e), exc_info=True)
            raise ManagerError(f"Failed to start {self.name}: {e}") from e

        self.state = ManagerState.RUNNING
        self.logger.info("manager_started")

    async def stop(self) -> None:
        """Cancel background tasks and release resources."""
        if self.state not in (ManagerState.RUNNING, ManagerState.READY, ManagerState.ERROR):
            self.logger.warning("stop_called_when_not_running", state=self.state.value)
            return

        self.state = ManagerState.STOPPING
        self.logger.info("stopping_manager")

        for task in self._tasks:
            if not task.done():
                task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()

        try:
            await self._stop()
        except Exception as e:
            self.state = ManagerState.ERROR
            self.logger.error("stop_failed", error=str(e), exc_info=True)
            raise ManagerError(f"Failed to stop {self.name}: {e}") from e

        self.state = ManagerState.STOPPED
        self.logger.info("manager_stopped")

    async def health_check(self) -> HealthStatus:
        """Return the current health status."""
        try:
            details = await self._health_check()
            self._health_status = HealthStatus(
                healthy=True,
                last_check=datetime.now(timezone.utc),
                details=details
            )
        except Exception as e:
            self._health_status = HealthStatus(
                healthy=False,
                last_check=datetime.now(timezone.utc),
                error=str(e)
            )
            self.logger.error("health_check_failed", error=str(e))

        return self._health_status

    def _spawn_periodic(
        self,
        name: str,
        interval: float,
        func: Callable[[], Awaitable[Any]],
    ) -> asyncio.Task:
        """Run ``func`` every ``interval`` seconds until the manager stops."""
        async def loop():
            while True:
                await asyncio.sleep(interval)
                try:
                    await func()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self.logger.error("periodic_task_failed", task=name, error=str(e), exc_info=True)

        task = asyncio.create_task(loop(), name=f"{self.name}.{name}")
        self._tasks.append(task)
        return task

    @abstractmethod
    async def _initialize(self) -> None:
        """Component-specific initialization logic."""
        pass

    @abstractmethod
    async def _start(self) -> None:
        """Component-specific start logic."""
        pass

    @abstractmethod
    async def _stop(self) -> None:
        """Component-specific stop logic."""
        pass

    @abstractmethod
    async def _health_check(self) -> Dict[str, Any]:
        """Component-specific health check logic."""
        pass


__all__ = [
    'BaseManager',
    'ManagerState',
    'ManagerError',
    'ManagerNotReadyError',
    'ManagerAlreadyRunningError',
    'HealthStatus',
]
