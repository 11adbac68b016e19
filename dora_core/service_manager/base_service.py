from abc import ABC, abstractmethod


class BaseService(ABC):
    """
    Lifecycle contract for everything the ServiceManager runs (API gateway,
    backfill scheduler). Subclasses flip `_running` in start()/stop(); the
    /health endpoint reads it through `running`.
    """
    def __init__(self, name: str):
        self._name = name
        self._running = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def running(self) -> bool:
        return self._running

    @abstractmethod
    async def start(self):
        """Begin background work; must return once the service is accepting it."""

    @abstractmethod
    async def stop(self):
        """Cancel background work and release clients/connections."""
