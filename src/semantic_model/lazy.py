"""
Deferred loading of entity collections.

A LazyLoadingProxy wraps the coroutine that fetches one collection
(e.g. all tables of a model) and runs it at most once. Concurrent first
accesses share a single in-flight task.

State machine:
    UNLOADED -> LOADING -> LOADED
    UNLOADED -> LOADING -> FAILED    (reset() returns to UNLOADED)
"""

import asyncio
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Generic, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class LoadState(str, Enum):
    """Lifecycle of a lazy collection."""

    UNLOADED = "unloaded"
    LOADING = "loading"
    LOADED = "loaded"
    FAILED = "failed"


class LazyLoadingProxy(Generic[T]):
    """
    Loads a collection on first access, exactly once.

    Usage:
        proxy = LazyLoadingProxy(lambda: strategy.load_entities(location, refs))
        tables = await proxy.get()
    """

    def __init__(self, loader: Callable[[], Awaitable[list[T]]], name: str = "collection"):
        self._loader = loader
        self._name = name
        self._state = LoadState.UNLOADED
        self._task: asyncio.Task[list[T]] | None = None
        self._value: list[T] | None = None
        self._error: BaseException | None = None
        self.load_count = 0

    @property
    def state(self) -> LoadState:
        return self._state

    @property
    def is_loaded(self) -> bool:
        return self._state is LoadState.LOADED

    @property
    def value(self) -> list[T] | None:
        """The loaded collection, or None if not loaded yet."""
        return self._value

    async def get(self) -> list[T]:
        """
        Return the collection, loading it on first call.

        Raises:
            Exception: The loader's error while the proxy is FAILED
        """
        if self._state is LoadState.LOADED:
            return self._value  # type: ignore[return-value]
        if self._state is LoadState.FAILED:
            raise self._error  # type: ignore[misc]

        if self._task is None:
            self._state = LoadState.LOADING
            self._task = asyncio.ensure_future(self._run())

        # Shield so one cancelled caller does not cancel the shared load
        return await asyncio.shield(self._task)

    async def _run(self) -> list[T]:
        self.load_count += 1
        try:
            value = list(await self._loader())
        except asyncio.CancelledError:
            self._state = LoadState.UNLOADED
            self._task = None
            raise
        except Exception as e:
            self._state = LoadState.FAILED
            self._error = e
            logger.warning("Lazy load failed", collection=self._name, error=str(e))
            raise

        self._value = value
        self._state = LoadState.LOADED
        logger.debug("Lazy collection loaded", collection=self._name, count=len(value))
        return value

    def reset(self) -> None:
        """Return to UNLOADED so the next get() fetches again."""
        if self._state is LoadState.LOADING:
            raise RuntimeError(f"Cannot reset {self._name} while it is loading")
        self._state = LoadState.UNLOADED
        self._task = None
        self._value = None
        self._error = None
