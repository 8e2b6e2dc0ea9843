import errno
import stat
import threading
from typing import List
from unittest import mock

import pytest

from mavftpfs.filesystem.cache import AttributeCache
from mavftpfs.filesystem.client import StorageClient
from mavftpfs.filesystem.common import (
    EntryType,
    FileEntry,
    FileHandle,
    OpenMode,
    ProtocolError,
)
from mavftpfs.filesystem.filesystem import RemoteFileSystem
from mavftpfs.filesystem.fuse import FuseContext
from mavftpfs.filesystem.policy import PathPolicy
from mavftpfs.filesystem.service import LocalStorageService

CALLER = FuseContext(uid=1000, gid=100, pid=42)


class BrokenFile(FileHandle):
    """File handle whose data transfers fail with a fixed error code."""

    def __init__(self, code: int) -> None:
        self.code = code
        self.closed = False

    def seek(self, offset: int) -> None:
        pass

    def read(self, max_bytes: int) -> bytes:
        raise ProtocolError(self.code)

    def write(self, data: bytes) -> int:
        raise ProtocolError(self.code)

    def truncate(self, length: int) -> None:
        raise ProtocolError(self.code)

    def size(self) -> int:
        return 0

    def close(self) -> None:
        self.closed = True


def listing() -> List[FileEntry]:
    return [
        FileEntry("boot.log", EntryType.FILE, 120),
        FileEntry("fs", EntryType.DIRECTORY),
    ]


def create_fs(service, cache=None):
    return RemoteFileSystem(
        service,
        cache or AttributeCache(),
        PathPolicy.with_writable_paths(["/fs/microsd"]),
        context=lambda: CALLER,
    )


@pytest.fixture
def storage(tmp_path):
    (tmp_path / "boot.log").write_bytes(b"x" * 120)
    (tmp_path / "fs" / "microsd").mkdir(parents=True)
    (tmp_path / "fs" / "microsd" / "log.txt").write_bytes(b"hello")

    return tmp_path


@pytest.fixture
def service(storage):
    return mock.Mock(wraps=StorageClient(LocalStorageService(str(storage))))


@pytest.fixture
def fs(service):
    return create_fs(service)


def test_mount_callback():
    callback = mock.Mock()

    fs = RemoteFileSystem(
        mock.Mock(), AttributeCache(), PathPolicy(), mount_callback=callback
    )

    assert not callback.called
    fs.init()
    assert callback.called


def test_destroy_makes_no_remote_calls():
    mock_service = mock.Mock()

    create_fs(mock_service).destroy()

    assert mock_service.method_calls == []


def test_root_attributes(fs, service):
    attr = fs.getattr("/", None)

    assert attr["st_mode"] == stat.S_IFDIR | 0o555
    assert attr["st_uid"] == CALLER.uid
    assert attr["st_gid"] == CALLER.gid

    assert not service.listdir.called


def test_root_attributes_ignore_cache():
    cache = mock.Mock(wraps=AttributeCache())
    fs = create_fs(mock.Mock(), cache)

    assert stat.S_ISDIR(fs.getattr("/", None)["st_mode"])
    assert not cache.lookup.called


def test_read_only_file():
    mock_service = mock.Mock()
    mock_service.listdir.return_value = listing()

    fs = create_fs(mock_service)

    assert fs.getattr("/boot.log", None) == {
        "st_mode": stat.S_IFREG | 0o444,
        "st_size": 120,
        "st_uid": CALLER.uid,
        "st_gid": CALLER.gid,
        "st_nlink": 1,
    }
    mock_service.listdir.assert_called_once_with("/")


def test_read_only_directory():
    mock_service = mock.Mock()
    mock_service.listdir.return_value = listing()

    attr = create_fs(mock_service).getattr("/fs", None)

    assert attr["st_mode"] == stat.S_IFDIR | 0o555
    assert attr["st_nlink"] == 2


def test_writable_file(fs):
    attr = fs.getattr("/fs/microsd/log.txt", None)

    assert attr["st_mode"] == stat.S_IFREG | 0o644
    assert attr["st_size"] == 5


def test_writable_directory(fs):
    assert fs.getattr("/fs/microsd", None)["st_mode"] == stat.S_IFDIR | 0o755


def test_getattr_is_cached(fs, service):
    first = fs.getattr("/boot.log", None)
    second = fs.getattr("/boot.log", None)

    assert first == second
    assert service.listdir.call_count == 1


def test_getattr_siblings_share_listing(fs, service):
    fs.getattr("/boot.log", None)
    fs.getattr("/fs", None)

    service.listdir.assert_called_once_with("/")


def test_getattr_nonexistent(fs, service):
    with pytest.raises(FileNotFoundError) as e:
        fs.getattr("/nonexistent", None)

    assert e.value.errno == errno.ENOENT


def test_getattr_nonexistent_is_relisted(fs, service, storage):
    with pytest.raises(FileNotFoundError):
        fs.getattr("/later.txt", None)

    (storage / "later.txt").write_bytes(b"abc")

    assert fs.getattr("/later.txt", None)["st_size"] == 3
    assert service.listdir.call_count == 2


def test_getattr_nonexistent_parent(fs):
    with pytest.raises(OSError) as e:
        fs.getattr("/nonexistent/file", None)

    assert e.value.errno == errno.ENOENT


@pytest.mark.parametrize(
    "path", ["relative", "/fs/../boot.log", "/fs/", "//fs", "/fs/./microsd", "/a\0b"]
)
def test_malformed_path(fs, service, path):
    with pytest.raises(OSError) as e:
        fs.getattr(path, None)

    assert e.value.errno == errno.EINVAL
    assert service.method_calls == []


def test_malformed_rename_target(fs, service):
    with pytest.raises(OSError) as e:
        fs.rename("/fs/microsd/log.txt", "log.txt")

    assert e.value.errno == errno.EINVAL
    assert not service.rename.called


def test_readdir(fs):
    assert fs.readdir("/") == [".", "..", "boot.log", "fs"]
    assert fs.readdir("/fs/microsd") == [".", "..", "log.txt"]


def test_readdir_populates_cache(fs, service):
    fs.readdir("/")
    fs.getattr("/boot.log", None)
    fs.getattr("/fs", None)

    service.listdir.assert_called_once_with("/")


def test_readdir_replaces_cache(fs, storage):
    assert fs.getattr("/boot.log", None)["st_size"] == 120

    (storage / "boot.log").unlink()
    (storage / "boot2.log").write_bytes(b"")

    assert fs.readdir("/") == [".", "..", "boot2.log", "fs"]

    with pytest.raises(FileNotFoundError):
        fs.getattr("/boot.log", None)


def test_readdir_skips_dot_entries():
    mock_service = mock.Mock()
    mock_service.listdir.return_value = [
        FileEntry(".", EntryType.DIRECTORY),
        FileEntry("..", EntryType.DIRECTORY),
    ] + listing()

    assert create_fs(mock_service).readdir("/") == [".", "..", "boot.log", "fs"]


def test_readdir_failure():
    mock_service = mock.Mock()
    mock_service.listdir.side_effect = ProtocolError(errno.ENOTDIR)

    with pytest.raises(NotADirectoryError):
        create_fs(mock_service).readdir("/boot.log")


def test_create(fs, service, storage):
    with pytest.raises(FileNotFoundError):
        fs.getattr("/fs/microsd/new.txt", None)

    assert fs.create("/fs/microsd/new.txt", 0, 0o644) == 0

    attr = fs.getattr("/fs/microsd/new.txt", None)

    assert attr["st_size"] == 0
    assert attr["st_mode"] == stat.S_IFREG | 0o644
    assert (storage / "fs" / "microsd" / "new.txt").exists()

    service.open.assert_called_once_with("/fs/microsd/new.txt", OpenMode.CREATE)


def test_create_without_readdir(fs, service):
    fs.create("/fs/microsd/new.txt", 0, 0o644)

    assert fs.getattr("/fs/microsd/new.txt", None)["st_size"] == 0
    service.listdir.assert_called_once_with("/fs/microsd")


def test_create_failure():
    mock_service = mock.Mock()
    mock_service.open.side_effect = ProtocolError(errno.ENOSPC)

    with pytest.raises(OSError) as e:
        create_fs(mock_service).create("/fs/microsd/new.txt", 0, 0o644)

    assert e.value.errno == errno.ENOSPC


def test_write_then_read(fs):
    fs.create("/fs/microsd/data.bin", 0, 0o644)

    assert fs.write("/fs/microsd/data.bin", 0, 0, b"abcdef") == 6
    assert fs.read("/fs/microsd/data.bin", 0, 0, 6) == b"abcdef"


def test_read_at_offset(fs):
    assert fs.read("/fs/microsd/log.txt", 0, 1, 3) == b"ell"
    assert fs.read("/fs/microsd/log.txt", 0, 3, 100) == b"lo"
    assert fs.read("/fs/microsd/log.txt", 0, 10, 100) == b""


def test_read_refreshes_size(fs, storage):
    assert fs.getattr("/fs/microsd/log.txt", None)["st_size"] == 5

    (storage / "fs" / "microsd" / "log.txt").write_bytes(b"hello world")

    # Still served from cache
    assert fs.getattr("/fs/microsd/log.txt", None)["st_size"] == 5

    fs.read("/fs/microsd/log.txt", 0, 0, 4096)

    assert fs.getattr("/fs/microsd/log.txt", None)["st_size"] == 11


def test_write_updates_size(fs, service, storage):
    assert fs.getattr("/fs/microsd/log.txt", None)["st_size"] == 5

    fs.write("/fs/microsd/log.txt", 0, 5, b" world")

    assert fs.getattr("/fs/microsd/log.txt", None)["st_size"] == 11
    assert (storage / "fs" / "microsd" / "log.txt").read_bytes() == b"hello world"
    assert service.listdir.call_count == 1


def test_overwrite_keeps_size(fs, storage):
    fs.getattr("/fs/microsd/log.txt", None)

    fs.write("/fs/microsd/log.txt", 0, 0, b"J")

    assert fs.getattr("/fs/microsd/log.txt", None)["st_size"] == 5
    assert (storage / "fs" / "microsd" / "log.txt").read_bytes() == b"Jello"


def test_read_failure_code():
    handle = BrokenFile(errno.ETIMEDOUT)

    mock_service = mock.Mock()
    mock_service.open.return_value = handle

    with pytest.raises(OSError) as e:
        create_fs(mock_service).read("/boot.log", 0, 0, 10)

    assert e.value.errno == errno.ETIMEDOUT
    assert isinstance(e.value.__cause__, ProtocolError)
    assert handle.closed


def test_write_failure_closes_handle():
    handle = BrokenFile(errno.EIO)

    mock_service = mock.Mock()
    mock_service.open.return_value = handle

    with pytest.raises(OSError) as e:
        create_fs(mock_service).write("/fs/microsd/log.txt", 0, 0, b"abc")

    assert e.value.errno == errno.EIO
    assert handle.closed


def test_truncate_failure_closes_handle():
    handle = BrokenFile(errno.EROFS)

    mock_service = mock.Mock()
    mock_service.open.return_value = handle

    with pytest.raises(OSError) as e:
        create_fs(mock_service).truncate("/boot.log", None, 0)

    assert e.value.errno == errno.EROFS
    assert handle.closed


def test_open_failure_code():
    mock_service = mock.Mock()
    mock_service.open.side_effect = ProtocolError(errno.EACCES)

    with pytest.raises(PermissionError):
        create_fs(mock_service).read("/boot.log", 0, 0, 10)


def test_truncate(fs, storage):
    fs.getattr("/fs/microsd/log.txt", None)

    fs.truncate("/fs/microsd/log.txt", None, 2)

    assert (storage / "fs" / "microsd" / "log.txt").read_bytes() == b"he"
    assert fs.getattr("/fs/microsd/log.txt", None)["st_size"] == 2


def test_unlink(fs, storage):
    fs.getattr("/fs/microsd/log.txt", None)

    fs.unlink("/fs/microsd/log.txt")

    assert not (storage / "fs" / "microsd" / "log.txt").exists()

    with pytest.raises(FileNotFoundError):
        fs.getattr("/fs/microsd/log.txt", None)


def test_unlink_failure_invalidates():
    mock_service = mock.Mock()
    mock_service.listdir.return_value = listing()
    mock_service.unlink.side_effect = ProtocolError(errno.EROFS)

    cache = AttributeCache()
    fs = create_fs(mock_service, cache)

    fs.getattr("/boot.log", None)

    with pytest.raises(OSError) as e:
        fs.unlink("/boot.log")

    assert e.value.errno == errno.EROFS
    assert cache.lookup("/boot.log") is None


def test_mkdir_rmdir(fs, storage):
    fs.readdir("/fs/microsd")

    fs.mkdir("/fs/microsd/logs", 0o755)

    assert (storage / "fs" / "microsd" / "logs").is_dir()
    assert fs.getattr("/fs/microsd/logs", None)["st_mode"] == stat.S_IFDIR | 0o755

    fs.rmdir("/fs/microsd/logs")

    assert not (storage / "fs" / "microsd" / "logs").exists()

    with pytest.raises(FileNotFoundError):
        fs.getattr("/fs/microsd/logs", None)


def test_mkdir_existing(fs):
    with pytest.raises(FileExistsError):
        fs.mkdir("/fs/microsd", 0o755)


def test_rmdir_failure_invalidates():
    mock_service = mock.Mock()
    mock_service.listdir.return_value = listing()
    mock_service.rmdir.side_effect = ProtocolError(errno.ENOTEMPTY)

    cache = AttributeCache()
    fs = create_fs(mock_service, cache)

    fs.getattr("/fs", None)

    with pytest.raises(OSError) as e:
        fs.rmdir("/fs")

    assert e.value.errno == errno.ENOTEMPTY
    assert cache.lookup("/fs") is None


def test_rename(fs, storage):
    (storage / "fs" / "microsd" / "a.txt").write_bytes(b"abc")

    assert fs.getattr("/fs/microsd/a.txt", None)["st_size"] == 3

    fs.rename("/fs/microsd/a.txt", "/fs/microsd/b.txt")

    with pytest.raises(FileNotFoundError):
        fs.getattr("/fs/microsd/a.txt", None)

    assert fs.getattr("/fs/microsd/b.txt", None)["st_size"] == 3


def test_rename_between_directories(fs):
    fs.readdir("/fs/microsd")
    fs.mkdir("/fs/microsd/archive", 0o755)
    fs.readdir("/fs/microsd/archive")

    fs.rename("/fs/microsd/log.txt", "/fs/microsd/archive/log.txt")

    with pytest.raises(FileNotFoundError):
        fs.getattr("/fs/microsd/log.txt", None)

    assert fs.getattr("/fs/microsd/archive/log.txt", None)["st_size"] == 5


def test_rename_failure():
    mock_service = mock.Mock()
    mock_service.rename.side_effect = ProtocolError(errno.EXDEV)

    with pytest.raises(OSError) as e:
        create_fs(mock_service).rename("/fs/a", "/fs/b")

    assert e.value.errno == errno.EXDEV


def test_mutation_during_listing(fs, service, storage):
    """A listing made while a mutation is in flight must not outlive the mutation."""

    def unlink_with_concurrent_listing(path):
        # Another thread lists the directory before the remote side has finished
        fs.readdir("/fs/microsd")
        (storage / "fs" / "microsd" / "log.txt").unlink()

    service.unlink = mock.Mock(side_effect=unlink_with_concurrent_listing)

    fs.unlink("/fs/microsd/log.txt")

    with pytest.raises(FileNotFoundError):
        fs.getattr("/fs/microsd/log.txt", None)


def test_ownership_follows_caller(service):
    contexts = [FuseContext(uid=1, gid=2, pid=3), FuseContext(uid=4, gid=5, pid=6)]

    fs = RemoteFileSystem(
        service, AttributeCache(), PathPolicy(), context=lambda: contexts[0]
    )

    assert fs.getattr("/", None)["st_uid"] == 1

    contexts.reverse()

    assert fs.getattr("/", None)["st_uid"] == 4
    assert fs.getattr("/", None)["st_gid"] == 5


def test_listing_overtaken_by_mutation(fs, service, storage):
    """A listing requested before a mutation and completed after it is not cached."""
    listed = threading.Event()
    release = threading.Event()

    remote_listdir = service.listdir
    first_call = [True]

    def slow_listdir(path):
        entries = remote_listdir(path)

        if first_call[0]:
            first_call[0] = False
            listed.set()
            release.wait(5)

        return entries

    service.listdir = mock.Mock(side_effect=slow_listdir)

    results = []

    def lookup():
        try:
            fs.getattr("/fs/microsd/zzz", None)
        except FileNotFoundError as e:
            results.append(e)

    t = threading.Thread(target=lookup)
    t.start()

    assert listed.wait(5)

    fs.unlink("/fs/microsd/log.txt")
    release.set()
    t.join(5)

    assert len(results) == 1

    with pytest.raises(FileNotFoundError):
        fs.getattr("/fs/microsd/log.txt", None)


def test_outdated_listing_still_answers_its_caller():
    mock_service = mock.Mock()
    cache = AttributeCache()
    fs = create_fs(mock_service, cache)

    def listdir_racing_mutation(path):
        cache.invalidate(path)
        return listing()

    mock_service.listdir.side_effect = listdir_racing_mutation

    assert fs.getattr("/boot.log", None)["st_size"] == 120
    assert fs.readdir("/") == [".", "..", "boot.log", "fs"]
    assert cache.lookup("/boot.log") is None
