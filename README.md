# msdvfs

An in-memory FAT16 volume of the kind a USB mass-storage device presents to
a host, together with the logic that follows a file being dragged onto it
and hands its data to a consumer.

The boot sector, both FAT copies and the root directory are generated on the
fly; the data area of each file is served by a read callback. Writes to the
root directory are compared with the current directory and reported as
*created*, *deleted* or *changed* events.

## Modules

- `msdvfs.fat` – on-disk structures: `BootSector` (`for_disk`, `pack`,
  `total_size`), `DirEntry` (`pack`, `from_bytes`, `start_cluster`), the
  `FileAttr` and `FileChange` enums, the `VfsError` exception, and 8.3 name
  checks with `filename_valid` and `filename_character_valid`.
- `msdvfs.virtual_fs` – `VirtualFS`, the sector-addressed volume:
  `create_file`, `read`, `write`, `total_size`, `file_start_sector` and
  `set_file_change_callback`. The entry returned by `create_file` is the
  directory slot itself, so it can be compared with `is` against the `file`
  argument of change callbacks.
- `msdvfs.user` – `UserFiles`, which puts `DETAILS TXT`, `FAIL    TXT` (only
  when the last transfer status is non-zero) and `NEED_BL TXT` on the volume,
  and reacts to "magic" file names such as `REFRESH ACT` or `ERASE   ACT`
  (see `MagicFile`). Helpers `expand_info`, `string_field`, `setting_field`,
  `uint32_field` and `hex32_field` build the text lines. Optional hooks
  `build_hook`, `change_hook` and `magic_file_hook` can be assigned on a
  `UserFiles` instance.
- `msdvfs.transfer` – `FileTransfer`, which follows a file as its sectors
  and directory entry arrive, feeds the data to a stream, and decides when
  the transfer has finished (`TransferState`) and with which `Status`.
- `msdvfs.manager` – `VfsManager`, the connect / reconnect / disconnect
  state machine (`MountState`) driven by `periodic(elapsed_ms)`.

## A volume on its own

```python
from msdvfs.virtual_fs import VirtualFS

vfs = VirtualFS("MYDRIVE    ", 64 * 1024 * 1024)
entry = vfs.create_file("HELLO   TXT", lambda offset, count: b"hello\r\n", None, 7)

boot = vfs.read(0, 1)               # 512 bytes of boot sector
print(vfs.total_size())             # size of the volume in bytes
print(vfs.file_start_sector(entry)) # where HELLO.TXT's data begins
```

Disk sizes outside the FAT16 cluster range raise `VfsError`, as do invalid
8.3 names and a full root directory.

## Driving a transfer

`VfsManager` needs a stream object with five methods:

- `type_from_name(filename)` – a stream type for an 11-byte directory name,
  or `None`;
- `identify(data)` – a stream type if the sectors look like the start of a
  file it can take, or `None`;
- `open(stream_type)`, `write(data)`, `close()` – each returning a `Status`.
  `write` returns `Status.SUCCESS_DONE` when the stream has all it needs, or
  `Status.SUCCESS_DONE_OR_CONTINUE` when it could stop here.

```python
from msdvfs.manager import VfsManager
from msdvfs.transfer import Status

class BinStream:
    def type_from_name(self, filename):
        return "bin" if filename.endswith(b"BIN") else None

    def identify(self, data):
        return "bin" if data[:4] == b"\x00\x10\x00\x20" else None

    def open(self, stream_type):
        return Status.SUCCESS

    def write(self, data):
        return Status.SUCCESS_DONE_OR_CONTINUE

    def close(self):
        return Status.SUCCESS

manager = VfsManager(BinStream())
# forward host I/O:
#   manager.read_sectors(sector, count) / manager.write_sectors(sector, data)
# and call manager.periodic(elapsed_ms) on a timer.
print(manager.transfer_status())
```

When no `UserFiles` is passed, the manager creates one that reports its own
transfer status, remounts through `fs_remount`, and whose erase action does
nothing.

## What it does not do

- It has no USB or block-device layer: sector reads and writes must be
  forwarded to `read_sectors` / `write_sectors` by the caller.
- It ships no stream implementation; programming flash or otherwise
  consuming the file data is up to the stream object you supply.
- Files written by the host are not stored and cannot be read back.
- `DETAILS TXT` carries fixed placeholder build information; only the
  remount count changes.
- There is no command-line program.

## Tests

```
pip install -e .[test]
pytest
```