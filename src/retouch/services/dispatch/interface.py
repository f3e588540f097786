"""Queue dispatcher interface."""

from typing import Any, Protocol


class JobDispatcher(Protocol):
    """Hands a job payload to the worker endpoint."""

    name: str

    async def publish(self, target_url: str, payload: dict[str, Any], concurrency: int = 1) -> None:
        """Deliver ``payload`` to ``target_url`` with at most ``concurrency`` in flight.

        Raises:
            DispatchError: If the payload could not be handed off
        """
        ...

    async def aclose(self) -> None:
        """Release resources held by the dispatcher."""
        ...
