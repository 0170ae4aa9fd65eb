import json
import os
import stat

import pytest

from remote_subs.storage import ConfigStore, JsonFileConfigStore, MemoryConfigStore
from remote_subs.tenants import InvalidConfig, TenantConfig, config_from_form

KEY = "0123456789abcdef"


def test_memory_store():
    store = MemoryConfigStore()
    assert not store.has(KEY)
    store.set(KEY, TenantConfig(key=KEY, ftp_host="h"))
    assert store.get(KEY).ftp_host == "h"


def test_store_base_requires_get_and_set():
    with pytest.raises(TypeError):
        ConfigStore()

    class HalfStore(ConfigStore):
        def get(self, key):
            return None

    with pytest.raises(TypeError):
        HalfStore()


def test_json_store_round_trip(tmp_path):
    store = JsonFileConfigStore(str(tmp_path))
    config = TenantConfig(key=KEY, ftp_host="ftp.example.org", ftp_pass="secret", drive_tokens={"access_token": "x"})
    store.set(KEY, config)

    reloaded = JsonFileConfigStore(str(tmp_path))
    got = reloaded.get(KEY)
    assert got == config
    assert got.drive_tokens == {"access_token": "x"}
    assert json.loads(store.path.read_text(encoding="utf-8"))[KEY]["ftp_host"] == "ftp.example.org"


@pytest.mark.skipif(os.name != "posix", reason="posix permissions")
def test_json_store_file_is_private(tmp_path):
    store = JsonFileConfigStore(str(tmp_path))
    store.set(KEY, TenantConfig(key=KEY, ftp_host="h"))
    assert stat.S_IMODE(os.stat(store.path).st_mode) == 0o600
    assert not (tmp_path / "configs.json.tmp").exists()


def test_json_store_rolls_back_failed_write(tmp_path, monkeypatch):
    store = JsonFileConfigStore(str(tmp_path))

    def fail(path, data):
        raise OSError("disk full")

    monkeypatch.setattr("remote_subs.storage.atomic_write_text", fail)
    with pytest.raises(OSError):
        store.set(KEY, TenantConfig(key=KEY, ftp_host="h"))
    assert store.get(KEY) is None


def test_config_from_form_ftp():
    config = config_from_form(
        KEY,
        {"remoteKind": "FTP", "ftpHost": " ftp.example.org ", "ftpUser": "u", "ftpPass": "p", "ftpSecure": "on"},
    )
    assert config.remote_kind == "ftp"
    assert config.ftp_host == "ftp.example.org"
    assert config.ftp_secure is True
    assert config.ftp_base == "/subtitles"


def test_config_from_form_rejects_bad_input():
    with pytest.raises(InvalidConfig):
        config_from_form(KEY, {"remoteKind": "smb", "ftpHost": "h"})
    with pytest.raises(InvalidConfig):
        config_from_form(KEY, {"remoteKind": "ftp"})


def test_config_from_form_keeps_drive_tokens():
    previous = TenantConfig(key=KEY, remote_kind="drive", drive_tokens={"refresh_token": "r"})
    config = config_from_form(KEY, {"remoteKind": "drive", "driveFolderId": "abc"}, previous=previous)
    assert config.drive_tokens == {"refresh_token": "r"}
    assert config.drive_folder_id == "abc"
    view = config.public_view()
    assert view["driveConnected"] is True
    assert "ftpPass" not in view
