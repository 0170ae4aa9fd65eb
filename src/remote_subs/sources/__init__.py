from __future__ import annotations

from typing import Optional

from ..settings import Settings
from ..tenants import TenantConfig
from .base import (
    RemoteConnection,
    RemoteConnectionError,
    RemoteEntry,
    RemoteFile,
    RemoteListError,
    RemoteSource,
    RemoteSourceError,
    RemoteTransferError,
)
from .drive import DriveSource
from .ftp import FtpSource


def open_source(config: TenantConfig, settings: Settings, timeout: Optional[float] = None) -> RemoteSource:
    """Build the remote source a tenant's config points at."""
    socket_timeout = timeout or settings.traversal_timeout_seconds
    if config.remote_kind == "drive":
        return DriveSource(
            config.drive_folder_id,
            config.drive_tokens,
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            timeout=socket_timeout,
        )
    return FtpSource(
        config.ftp_host,
        user=config.ftp_user,
        password=config.ftp_pass,
        secure=config.ftp_secure,
        base_path=config.ftp_base,
        timeout=socket_timeout,
    )


__all__ = [
    "DriveSource",
    "FtpSource",
    "RemoteConnection",
    "RemoteConnectionError",
    "RemoteEntry",
    "RemoteFile",
    "RemoteListError",
    "RemoteSource",
    "RemoteSourceError",
    "RemoteTransferError",
    "open_source",
]
