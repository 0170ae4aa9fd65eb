from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, Mapping, Optional

REMOTE_KINDS = ("ftp", "drive")
DEFAULT_FTP_BASE = "/subtitles"


class ConfigMissing(LookupError):
    """No configuration is stored for a tenant key."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Config missing for {key}")
        self.key = key


class InvalidConfig(ValueError):
    pass


def truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class TenantConfig:
    """Connection parameters of one tenant, snapshotted by its runtime."""

    key: str
    remote_kind: str = "ftp"
    ftp_host: str = ""
    ftp_user: str = ""
    ftp_pass: str = ""
    ftp_secure: bool = False
    ftp_base: str = DEFAULT_FTP_BASE
    drive_folder_id: str = ""
    drive_tokens: Dict[str, Any] = field(default_factory=dict, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def public_view(self) -> Dict[str, Any]:
        """Config as shown back to the configuration page, secrets removed."""
        return {
            "key": self.key,
            "remoteKind": self.remote_kind,
            "ftpHost": self.ftp_host,
            "ftpUser": self.ftp_user,
            "ftpSecure": self.ftp_secure,
            "ftpBase": self.ftp_base,
            "driveFolderId": self.drive_folder_id,
            "driveConnected": bool(self.drive_tokens),
        }

    def with_drive_tokens(self, tokens: Mapping[str, Any], folder_id: Optional[str] = None) -> "TenantConfig":
        return replace(
            self,
            drive_tokens=dict(tokens),
            drive_folder_id=folder_id if folder_id else self.drive_folder_id,
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TenantConfig":
        return cls(
            key=str(data["key"]),
            remote_kind=str(data.get("remote_kind") or "ftp"),
            ftp_host=str(data.get("ftp_host") or ""),
            ftp_user=str(data.get("ftp_user") or ""),
            ftp_pass=str(data.get("ftp_pass") or ""),
            ftp_secure=bool(data.get("ftp_secure")),
            ftp_base=str(data.get("ftp_base") or DEFAULT_FTP_BASE),
            drive_folder_id=str(data.get("drive_folder_id") or ""),
            drive_tokens=dict(data.get("drive_tokens") or {}),
        )


def config_from_form(key: str, data: Mapping[str, Any], previous: Optional[TenantConfig] = None) -> TenantConfig:
    """Build a config from configuration-page fields (camelCase names).

    Drive tokens are never part of the form; they are carried over from
    ``previous`` so re-saving the form keeps the Drive connection.
    """
    kind = str(data.get("remoteKind") or "ftp").strip().lower()
    if kind not in REMOTE_KINDS:
        raise InvalidConfig(f"unknown remoteKind {kind!r}")

    ftp_host = str(data.get("ftpHost") or "").strip()
    if kind == "ftp" and not ftp_host:
        raise InvalidConfig("ftpHost is required")

    return TenantConfig(
        key=key,
        remote_kind=kind,
        ftp_host=ftp_host,
        ftp_user=str(data.get("ftpUser") or "").strip(),
        ftp_pass=str(data.get("ftpPass") or ""),
        ftp_secure=truthy(data.get("ftpSecure")),
        ftp_base=str(data.get("ftpBase") or DEFAULT_FTP_BASE).strip() or DEFAULT_FTP_BASE,
        drive_folder_id=str(data.get("driveFolderId") or "").strip(),
        drive_tokens=dict(previous.drive_tokens) if previous else {},
    )
