from __future__ import annotations

import json
import subprocess

import pytest
from conftest import make_volume_snapshot_backup

from k8s_backup_cleaner.snapshot import (
    BackupMetaError,
    VolumeSnapshotBackupManager,
    parse_backup_meta,
)
from k8s_backup_cleaner.storage import CleanupError, RcloneBackupDataRemover, RemoteCommandError

_BACKUP_META = json.dumps(
    {
        "region": "us-west-2",
        "tikv": {
            "stores": [
                {"store_id": 1, "volumes": [{"volume_id": "vol-1", "snapshot_id": "snap-1"}]},
                {"store_id": 2, "volumes": [{"volume_id": "vol-2", "snapshot_id": "snap-2"}]},
            ]
        },
    }
)


class _FakeCommands:
    """Answers rclone and aws invocations from a table keyed on the subcommand."""

    def __init__(self, responses: dict[tuple[str, ...], subprocess.CompletedProcess | list]) -> None:
        self.responses = responses
        self.commands: list[list[str]] = []

    def __call__(self, command, **_kwargs):
        self.commands.append(command)
        key = tuple(command[1:3])
        response = self.responses.get(key) or self.responses.get(tuple(command[1:2]))
        if isinstance(response, list):
            response = response.pop(0)
        if response is None:
            return subprocess.CompletedProcess(args=command, returncode=0, stdout="", stderr="")
        return response


def _completed(stdout: str = "", *, returncode: int = 0, stderr: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


def _manager(monkeypatch: pytest.MonkeyPatch, fake: _FakeCommands) -> VolumeSnapshotBackupManager:
    monkeypatch.setattr("k8s_backup_cleaner.storage.shutil.which", lambda binary: f"/usr/bin/{binary}")
    monkeypatch.setattr("k8s_backup_cleaner.snapshot.shutil.which", lambda binary: f"/usr/bin/{binary}")
    monkeypatch.setattr("k8s_backup_cleaner.storage.subprocess.run", fake)
    monkeypatch.setattr("k8s_backup_cleaner.snapshot.subprocess.run", fake)
    return VolumeSnapshotBackupManager(remover=RcloneBackupDataRemover())


def test_parse_backup_meta_collects_snapshots_of_every_store() -> None:
    meta = parse_backup_meta(_BACKUP_META)

    assert meta.region == "us-west-2"
    assert [snapshot.snapshot_id for snapshot in meta.snapshots] == ["snap-1", "snap-2"]
    assert meta.snapshots[1].store_id == 2


def test_parse_backup_meta_with_invalid_json_raises_meta_error() -> None:
    with pytest.raises(BackupMetaError, match="meta stage failed: backup meta is not valid JSON"):
        parse_backup_meta("{not-json")


@pytest.mark.parametrize(
    ("document", "match"),
    [
        ({"tikv": {"stores": [{"store_id": "tikv-0", "volumes": []}]}}, "store_id must be an integer"),
        ({"tikv": {"stores": ["store-1"]}}, "store entry must be an object"),
        ({"tikv": {"stores": [{"store_id": 1, "volumes": ["vol-1"]}]}}, "volume entry of store 1 must be an object"),
        ({"tikv": ["store-1"]}, "field 'tikv' must be an object"),
        ({"tikv": {"stores": {"store_id": 1}}}, "'tikv.stores' must be a list"),
        (["not", "an", "object"], "must be a JSON object"),
    ],
)
def test_parse_backup_meta_with_malformed_shape_raises_meta_error(document, match: str) -> None:
    with pytest.raises(BackupMetaError, match=match):
        parse_backup_meta(json.dumps(document))


def test_clean_backup_meta_with_volume_snapshots_deletes_snapshots_then_meta(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _FakeCommands({("cat",): _completed(_BACKUP_META)})
    manager = _manager(monkeypatch, fake)

    manager.clean_backup_meta_with_volume_snapshots(make_volume_snapshot_backup("vs-1"))

    assert [command[1:3] for command in fake.commands] == [
        ["cat", "--s3-provider=AWS"],
        ["ec2", "delete-snapshot"],
        ["ec2", "delete-snapshot"],
        ["purge", "--s3-provider=AWS"],
    ]
    assert fake.commands[0][-1] == ":s3:backups/vs-1/backupmeta"
    assert fake.commands[1][3:] == ["--snapshot-id", "snap-1", "--region", "us-west-2"]
    assert fake.commands[-1][-1] == ":s3:backups/vs-1"


def test_clean_backup_meta_with_volume_snapshots_tolerates_already_deleted_snapshot(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    not_found = _completed(returncode=254, stderr="An error occurred (InvalidSnapshot.NotFound) when calling DeleteSnapshot")
    fake = _FakeCommands({("cat",): _completed(_BACKUP_META), ("ec2", "delete-snapshot"): [not_found, _completed()]})
    manager = _manager(monkeypatch, fake)

    manager.clean_backup_meta_with_volume_snapshots(make_volume_snapshot_backup("vs-1"))

    assert fake.commands[-1][1] == "purge"


def test_clean_backup_meta_with_volume_snapshots_stops_on_snapshot_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    denied = _completed(returncode=254, stderr="An error occurred (UnauthorizedOperation)")
    fake = _FakeCommands({("cat",): _completed(_BACKUP_META), ("ec2", "delete-snapshot"): [denied]})
    manager = _manager(monkeypatch, fake)

    with pytest.raises(RemoteCommandError, match="snapshot stage failed: .*UnauthorizedOperation"):
        manager.clean_backup_meta_with_volume_snapshots(make_volume_snapshot_backup("vs-1"))

    assert all(command[1] != "purge" for command in fake.commands)


def test_clean_backup_meta_with_missing_meta_raises_read_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _FakeCommands({("cat",): _completed(returncode=3, stderr="object not found")})
    manager = _manager(monkeypatch, fake)

    with pytest.raises(RemoteCommandError, match="read stage failed: object not found"):
        manager.clean_backup_meta_with_volume_snapshots(make_volume_snapshot_backup("vs-1"))


def test_calc_volume_snapshot_backup_size_sums_paged_blocks(monkeypatch: pytest.MonkeyPatch) -> None:
    first_page = json.dumps({"Blocks": [{"BlockIndex": 0}, {"BlockIndex": 1}], "BlockSize": 524288, "NextToken": "t1"})
    second_page = json.dumps({"Blocks": [{"BlockIndex": 2}], "BlockSize": 524288})
    other_snapshot = json.dumps({"Blocks": [{"BlockIndex": 0}], "BlockSize": 524288})
    fake = _FakeCommands(
        {
            ("cat",): _completed(_BACKUP_META),
            ("ebs", "list-snapshot-blocks"): [_completed(first_page), _completed(second_page), _completed(other_snapshot)],
        }
    )
    manager = _manager(monkeypatch, fake)

    size, error = manager.calc_volume_snapshot_backup_size(make_volume_snapshot_backup("vs-2"))

    assert error is None
    assert size == 4 * 524288
    assert fake.commands[2][-2:] == ["--next-token", "t1"]


def test_calc_volume_snapshot_backup_size_with_failure_returns_partial_size_and_error(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    one_block = json.dumps({"Blocks": [{"BlockIndex": 0}], "BlockSize": 524288})
    throttled = _completed(returncode=254, stderr="ThrottlingException")
    fake = _FakeCommands(
        {
            ("cat",): _completed(_BACKUP_META),
            ("ebs", "list-snapshot-blocks"): [_completed(one_block), throttled],
        }
    )
    manager = _manager(monkeypatch, fake)

    size, error = manager.calc_volume_snapshot_backup_size(make_volume_snapshot_backup("vs-2"))

    assert size == 524288
    assert isinstance(error, CleanupError)
    assert "ThrottlingException" in str(error)


def test_calc_volume_snapshot_backup_size_without_backup_path_returns_zero_and_error() -> None:
    manager = VolumeSnapshotBackupManager(remover=RcloneBackupDataRemover())

    size, error = manager.calc_volume_snapshot_backup_size(make_volume_snapshot_backup("vs-3", backup_path=""))

    assert size == 0
    assert isinstance(error, BackupMetaError)


def test_calc_volume_snapshot_backup_size_with_malformed_meta_returns_zero_and_meta_error(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    malformed = json.dumps({"tikv": {"stores": [{"store_id": "tikv-0", "volumes": [{"snapshot_id": "snap-1"}]}]}})
    fake = _FakeCommands({("cat",): _completed(malformed)})
    manager = _manager(monkeypatch, fake)

    size, error = manager.calc_volume_snapshot_backup_size(make_volume_snapshot_backup("vs-4"))

    assert size == 0
    assert isinstance(error, BackupMetaError)
    assert all(command[1] != "ebs" for command in fake.commands)


def test_calc_volume_snapshot_backup_size_with_bad_block_size_returns_size_error(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    page = json.dumps({"Blocks": [{"BlockIndex": 0}], "BlockSize": "half-a-meg"})
    fake = _FakeCommands(
        {
            ("cat",): _completed(_BACKUP_META),
            ("ebs", "list-snapshot-blocks"): _completed(page),
        }
    )
    manager = _manager(monkeypatch, fake)

    size, error = manager.calc_volume_snapshot_backup_size(make_volume_snapshot_backup("vs-5"))

    assert size == 0
    assert isinstance(error, CleanupError)
    assert "size stage failed: unexpected BlockSize 'half-a-meg'" in str(error)
