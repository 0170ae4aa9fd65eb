from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import BinaryIO, List


class RemoteSourceError(Exception):
    """Base class for failures talking to a tenant's remote storage."""


class RemoteConnectionError(RemoteSourceError):
    pass


class RemoteListError(RemoteSourceError):
    pass


class RemoteTransferError(RemoteSourceError):
    pass


@dataclass(frozen=True)
class RemoteEntry:
    """One row of a directory listing."""

    name: str
    identifier: str
    is_dir: bool


@dataclass(frozen=True)
class RemoteFile:
    """A subtitle file found by a traversal.

    ``identifier`` is a full path for FTP and a file id for Drive.
    """

    identifier: str
    name: str


class RemoteConnection(abc.ABC):
    @abc.abstractmethod
    async def list(self, identifier: str) -> List[RemoteEntry]:
        """List one directory. Raises RemoteListError."""

    @abc.abstractmethod
    async def download(self, identifier: str, sink: BinaryIO) -> None:
        """Write a file's bytes into ``sink``. Raises RemoteTransferError."""

    @abc.abstractmethod
    async def close(self) -> None:
        """Release the connection. Safe to call more than once."""

    async def __aenter__(self) -> "RemoteConnection":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


class RemoteSource(abc.ABC):
    kind: str = ""

    @property
    @abc.abstractmethod
    def root(self) -> str:
        """Identifier of the directory traversals start from."""

    @abc.abstractmethod
    async def connect(self) -> RemoteConnection:
        """Open a connection. Raises RemoteConnectionError."""
