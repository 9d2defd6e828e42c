"""Remote client contract, request pacing and client factory loading."""

import asyncio
import importlib
import inspect
from typing import Any, Awaitable, Callable, Protocol, Sequence

from .models import ResourceNode, VersionRecord

DEFAULT_REQUEST_DELAY = 0.02  # seconds slept after every remote call


class RemoteClient(Protocol):
    """
    Minimal interface the purge engine needs from a remote document store.

    Implementations raise the exceptions from ``historypurge.errors``:
    AuthorizationError, TransientError and FatalError for failed requests,
    NotInitializedError from delete_all_versions() when the versions of a
    file were never loaded. A client is used by one task at a time.
    """

    async def list_root_folders(self) -> list[str]: ...

    async def list_children(self, folder: str) -> ResourceNode: ...

    async def load_versions(self, files: Sequence[str]) -> dict[str, list[VersionRecord]]: ...

    async def delete_all_versions(self, files: Sequence[str]) -> None: ...

    async def close(self) -> None: ...


ClientFactory = Callable[[], Awaitable[RemoteClient]]


class RateLimitedClient:
    """
    Wrap a RemoteClient so every call is followed by a fixed delay.

    The delay is slept by the calling task only. Each connection paces
    itself, there is no global throttle shared between workers.
    """

    def __init__(self, client: RemoteClient, request_delay: float = DEFAULT_REQUEST_DELAY):
        self.client = client
        self.request_delay = request_delay
        self.calls = 0

    async def _paced(self, call: Awaitable[Any]) -> Any:
        self.calls += 1
        try:
            return await call
        finally:
            if self.request_delay > 0:
                await asyncio.sleep(self.request_delay)

    async def list_root_folders(self) -> list[str]:
        return await self._paced(self.client.list_root_folders())

    async def list_children(self, folder: str) -> ResourceNode:
        return await self._paced(self.client.list_children(folder))

    async def load_versions(self, files: Sequence[str]) -> dict[str, list[VersionRecord]]:
        return await self._paced(self.client.load_versions(files))

    async def delete_all_versions(self, files: Sequence[str]) -> None:
        await self._paced(self.client.delete_all_versions(files))

    async def close(self) -> None:
        await self.client.close()


def load_client_factory(spec: str, site: str, username: str) -> ClientFactory:
    """
    Resolve a ``module:callable`` string into a client factory.

    The callable is invoked as ``callable(site, username)`` once per
    connection and may return a client or an awaitable resolving to one.

    Raises:
        ValueError: If the string is malformed or does not name a callable
    """
    module_name, sep, attr_path = spec.partition(":")
    if not sep or not module_name or not attr_path:
        raise ValueError(f"Client factory must look like 'module:callable', got {spec!r}")

    target: Any = importlib.import_module(module_name)
    for attr in attr_path.split("."):
        try:
            target = getattr(target, attr)
        except AttributeError as e:
            raise ValueError(f"Client factory {spec!r} not found: {e}") from e

    if not callable(target):
        raise ValueError(f"Client factory {spec!r} is not callable")

    async def factory() -> RemoteClient:
        client = target(site, username)
        if inspect.isawaitable(client):
            client = await client
        return client

    return factory
