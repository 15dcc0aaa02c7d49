"""An emulated FAT16 volume whose files are produced and consumed by callbacks.

Limitations of the emulation:
  - files are contiguous on the volume
  - data written to a file cannot be read back
  - data should only be read once
"""

from __future__ import annotations

import struct
from collections.abc import Callable
from dataclasses import dataclass, fields, replace

from msdvfs.fat import (
    CLUSTER_SIZE,
    DELETED_MARK,
    DIR_ENTRY_SIZE,
    FAT_TABLE_SIZE,
    FILE_TEMPLATE,
    INVALID_SECTOR,
    MAX_FILES,
    ROOT_DIR_ENTRIES,
    ROOT_DIR_SIZE,
    SECTOR_SIZE,
    VOLUME_LABEL_TEMPLATE,
    BootSector,
    DirEntry,
    FileChange,
    VfsError,
    filename_valid,
)

ReadCallback = Callable[[int, int], bytes]
WriteCallback = Callable[[int, bytes], None]
FileChangeCallback = Callable[[bytes, FileChange, DirEntry, DirEntry], None]

_FAT_ENTRY = struct.Struct("<H")
_ENTRIES_PER_SECTOR = SECTOR_SIZE // DIR_ENTRY_SIZE


def _read_zero(sector_offset: int, num_sectors: int) -> bytes:
    return bytes(num_sectors * SECTOR_SIZE)


def _copy_entry(target: DirEntry, source: DirEntry) -> None:
    for field in fields(DirEntry):
        setattr(target, field.name, getattr(source, field.name))


@dataclass
class _Region:
    read: ReadCallback
    write: WriteCallback | None
    length: int

    @property
    def sectors(self) -> int:
        return self.length // SECTOR_SIZE


class VirtualFS:
    """A FAT16 volume laid out as boot sector, two FATs, root directory and files.

    Handles returned by :meth:`create_file` are the directory slots themselves;
    they keep their identity when the host rewrites the directory, so they can be
    compared with ``is`` against the ``file`` argument of change callbacks.
    """

    def __init__(self, drive_name: str | bytes, disk_size: int) -> None:
        self.boot_sector = BootSector.for_disk(disk_size)
        self._fat = bytearray(FAT_TABLE_SIZE)
        self._fat_idx = 0
        self._entries = [DirEntry() for _ in range(ROOT_DIR_ENTRIES)]
        self._dir_idx = 0
        self.file_count = 0
        self._on_change: FileChangeCallback | None = None

        fat_length = SECTOR_SIZE * self.boot_sector.logical_sectors_per_fat
        self._regions = [
            _Region(self._read_boot_sector, None, SECTOR_SIZE),
            _Region(self._read_fat, None, fat_length),
            _Region(self._read_fat, None, fat_length),
            _Region(self._read_dir, self._write_dir, ROOT_DIR_SIZE),
        ]
        self.data_start = sum(region.length for region in self._regions)

        self._append_fat(0xFFF8)  # media type
        self._append_fat(0xFFFF)  # clean volume
        self._entries[0] = replace(VOLUME_LABEL_TEMPLATE, filename=drive_name)
        self._dir_idx = 1

    def _write_fat(self, idx: int, value: int) -> None:
        if (idx + 1) * 2 > len(self._fat):
            raise VfsError(f"FAT entry {idx} outside the allocation table")
        _FAT_ENTRY.pack_into(self._fat, idx * 2, value & 0xFFFF)

    def _append_fat(self, value: int) -> None:
        self._write_fat(self._fat_idx, value)
        self._fat_idx += 1

    def total_size(self) -> int:
        """Size of the volume in bytes."""
        return self.boot_sector.total_size()

    def create_file(
        self,
        filename: str | bytes,
        read_cb: ReadCallback | None,
        write_cb: WriteCallback | None,
        length: int,
    ) -> DirEntry:
        """Add a file of the given length and return its directory entry."""
        if not filename_valid(filename):
            raise VfsError(f"invalid 8.3 filename: {filename!r}")
        if self._dir_idx >= len(self._entries):
            raise VfsError("root directory is full")
        if len(self._regions) >= MAX_FILES:
            raise VfsError("too many files on the virtual volume")

        cluster_size = self.boot_sector.bytes_per_sector * self.boot_sector.sectors_per_cluster
        clusters = (length + cluster_size - 1) // cluster_size
        first_cluster = 0
        if length > 0:
            first_cluster = self._fat_idx
            for _ in range(clusters - 1):
                self._append_fat(self._fat_idx + 1)
            self._append_fat(0xFFFF)

        entry = self._entries[self._dir_idx]
        _copy_entry(entry, replace(FILE_TEMPLATE, filename=filename))
        entry.filesize = length
        entry.first_cluster_high_16 = (first_cluster >> 16) & 0xFFFF
        entry.first_cluster_low_16 = first_cluster & 0xFFFF
        self._dir_idx += 1

        self._regions.append(_Region(read_cb or _read_zero, write_cb, clusters * cluster_size))
        self.file_count += 1
        return entry

    def set_file_change_callback(self, callback: FileChangeCallback | None) -> None:
        """Set the function told when the host creates, deletes or changes a file."""
        self._on_change = callback

    def _notify(self, filename: bytes, change: FileChange, old: DirEntry, new: DirEntry) -> None:
        if self._on_change is not None:
            self._on_change(filename, change, old, new)

    def file_start_sector(self, entry: DirEntry) -> int:
        """First sector of a file, or INVALID_SECTOR for an empty file."""
        if entry.filesize == 0:
            return INVALID_SECTOR
        return self._cluster_to_sector(entry.start_cluster())

    def _cluster_to_sector(self, cluster: int) -> int:
        sectors_before_data = self.data_start // self.boot_sector.bytes_per_sector
        return sectors_before_data + (cluster - 2) * self.boot_sector.sectors_per_cluster

    def read(self, sector: int, num_sectors: int) -> bytes:
        """Return num_sectors sectors starting at sector; unmapped space reads as zeros."""
        out = bytearray(num_sectors * SECTOR_SIZE)
        remaining = num_sectors
        filled = 0
        current = 0
        for region in self._regions:
            if remaining == 0:
                break
            end = current + region.sectors
            if current <= sector < end:
                count = min(end - sector, remaining)
                chunk = bytes(region.read(sector - current, count))[: count * SECTOR_SIZE]
                start = filled * SECTOR_SIZE
                out[start : start + len(chunk)] = chunk
                sector += count
                remaining -= count
                filled += count
            current = end
        return bytes(out)

    def write(self, sector: int, data: bytes) -> None:
        """Write whole sectors starting at sector to the regions they fall in."""
        data = bytes(data)
        if len(data) % SECTOR_SIZE:
            raise ValueError(f"write length {len(data)} is not a multiple of {SECTOR_SIZE}")
        remaining = len(data) // SECTOR_SIZE
        consumed = 0
        current = 0
        for region in self._regions:
            if remaining == 0:
                break
            end = current + region.sectors
            if current <= sector < end:
                count = min(end - sector, remaining)
                start = consumed * SECTOR_SIZE
                if region.write is not None:
                    region.write(sector - current, data[start : start + count * SECTOR_SIZE])
                sector += count
                remaining -= count
                consumed += count
            current = end

    def _read_boot_sector(self, sector_offset: int, num_sectors: int) -> bytes:
        if sector_offset != 0:
            return b""
        return self.boot_sector.pack()

    def _read_fat(self, sector_offset: int, num_sectors: int) -> bytes:
        start = sector_offset * SECTOR_SIZE
        end = (sector_offset + num_sectors) * SECTOR_SIZE
        if end > len(self._fat):
            return b""
        return bytes(self._fat[start:end])

    def _check_dir_range(self, sector_offset: int, num_sectors: int) -> None:
        if (sector_offset + num_sectors) * SECTOR_SIZE > ROOT_DIR_SIZE:
            raise VfsError("access beyond the end of the root directory")

    def _read_dir(self, sector_offset: int, num_sectors: int) -> bytes:
        self._check_dir_range(sector_offset, num_sectors)
        if sector_offset != 0:
            return b""
        return b"".join(entry.pack() for entry in self._entries[: self._dir_idx])

    def _write_dir(self, sector_offset: int, data: bytes) -> None:
        num_sectors = len(data) // SECTOR_SIZE
        self._check_dir_range(sector_offset, num_sectors)
        start_index = sector_offset * _ENTRIES_PER_SECTOR
        new_entries = [
            DirEntry.from_bytes(data[pos : pos + DIR_ENTRY_SIZE]) for pos in range(0, len(data), DIR_ENTRY_SIZE)
        ]
        old_entries = self._entries[start_index : start_index + len(new_entries)]
        # The volume label in the very first slot is never reported.
        skip = 1 if sector_offset == 0 else 0

        for old, new in list(zip(old_entries, new_entries))[skip:]:
            if old.pack() == new.pack():
                continue
            same_name = old.filename == new.filename
            self._notify(new.filename, FileChange.CHANGED, old, new)
            if new.filename[0] == DELETED_MARK:
                self._notify(old.filename, FileChange.DELETED, old, new)
                continue
            if not same_name and filename_valid(new.filename):
                self._notify(new.filename, FileChange.CREATED, old, new)

        for old, new in zip(old_entries, new_entries):
            _copy_entry(old, new)