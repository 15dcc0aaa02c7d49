"""FAT16 on-disk structures used by the virtual mass-storage drive."""

from __future__ import annotations

import struct
from dataclasses import dataclass, replace
from enum import IntEnum, IntFlag

SECTOR_SIZE = 512
CLUSTER_SIZE = 0x1000
INVALID_SECTOR = 0xFFFFFFFF
MAX_FILES = 16
FILENAME_LENGTH = 11
DIR_ENTRY_SIZE = 32
ROOT_DIR_ENTRIES = 32
ROOT_DIR_SIZE = ROOT_DIR_ENTRIES * DIR_ENTRY_SIZE
FAT_TABLE_SIZE = 512 * 8
DELETED_MARK = 0xE5

# FAT16 cluster count limits with a safety margin
FAT_CLUSTERS_MAX = 65525 - 100
FAT_CLUSTERS_MIN = 4086 + 100

_INVALID_STARTING_CHARS = frozenset({DELETED_MARK, 0x00, 0x20})
_INVALID_CHARS = frozenset(
    {0x22, 0x2A, 0x2B, 0x2C, 0x2E, 0x2F, 0x3A, 0x3B, 0x3C, 0x3D, 0x3E, 0x3F, 0x5B, 0x5C, 0x5D, 0x7C}
)

_DIR_FORMAT = struct.Struct("<11sBBBHHHHHHHI")
_BOOT_FORMAT = struct.Struct("<11sHBHBHHBHHHIIBBBI11s8s448sH")

_BOOTSTRAP_CODE = bytes.fromhex(
    "FAB8C0070520018ED0BC0010B8C0078ED8BE6D00E80B00EBFEB40EB700B307CD10C3"
    "8A044608C07405E8EDFFEBF4C3"
)
_BOOTSTRAP_MESSAGE = b"PLEASE REMOVE THE ARM MBED DAPLINK USB DEVICE AND REBOOT THE SYSTEM..\x00"
BOOTSTRAP = (_BOOTSTRAP_CODE + _BOOTSTRAP_MESSAGE).ljust(448, b"\x00")


class VfsError(Exception):
    """Raised when the virtual filesystem is asked for something it cannot do."""


class FileAttr(IntFlag):
    READ_ONLY = 1 << 0
    HIDDEN = 1 << 1
    SYSTEM = 1 << 2
    VOLUME_LABEL = 1 << 3
    SUB_DIR = 1 << 4
    ARCHIVE = 1 << 5


class FileChange(IntEnum):
    CREATED = 0
    DELETED = 1
    CHANGED = 2


def _as_filename(name: str | bytes) -> bytes:
    raw = name.encode("latin-1") if isinstance(name, str) else bytes(name)
    if len(raw) > FILENAME_LENGTH:
        raise ValueError(f"filename longer than {FILENAME_LENGTH} bytes: {raw!r}")
    return raw.ljust(FILENAME_LENGTH, b"\x00")


def filename_character_valid(character: int) -> bool:
    """Return True if the byte may appear in an 8.3 directory name."""
    if ord("a") <= character <= ord("z"):
        return False
    if character < 0x20 and character != 0x05:
        return False
    return character not in _INVALID_CHARS


def filename_valid(filename: str | bytes) -> bool:
    """Return True if the 11-byte name is a valid 8.3 directory name."""
    name = _as_filename(filename)
    if name[0] in _INVALID_STARTING_CHARS:
        return False
    return all(filename_character_valid(c) for c in name)


@dataclass(eq=True)
class DirEntry:
    """A 32-byte FAT directory entry."""

    filename: bytes = b""
    attributes: int = 0
    reserved: int = 0
    creation_time_ms: int = 0
    creation_time: int = 0
    creation_date: int = 0
    accessed_date: int = 0
    first_cluster_high_16: int = 0
    modification_time: int = 0
    modification_date: int = 0
    first_cluster_low_16: int = 0
    filesize: int = 0

    def __post_init__(self) -> None:
        self.filename = _as_filename(self.filename)

    def pack(self) -> bytes:
        return _DIR_FORMAT.pack(
            self.filename,
            self.attributes,
            self.reserved,
            self.creation_time_ms,
            self.creation_time,
            self.creation_date,
            self.accessed_date,
            self.first_cluster_high_16,
            self.modification_time,
            self.modification_date,
            self.first_cluster_low_16,
            self.filesize,
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> DirEntry:
        if len(data) != DIR_ENTRY_SIZE:
            raise ValueError(f"directory entry must be {DIR_ENTRY_SIZE} bytes, got {len(data)}")
        return cls(*_DIR_FORMAT.unpack(bytes(data)))

    def start_cluster(self) -> int:
        """First cluster of the file; FAT16 only uses the low 16 bits."""
        return self.first_cluster_low_16


VOLUME_LABEL_TEMPLATE = DirEntry(
    attributes=FileAttr.VOLUME_LABEL | FileAttr.ARCHIVE,
    modification_time=0x8E41,
    modification_date=0x32BB,
)

FILE_TEMPLATE = DirEntry(
    attributes=FileAttr.READ_ONLY,
    creation_date=0x4876,
    accessed_date=0x4876,
    modification_time=0x83DC,
    modification_date=0x4876,
)


@dataclass
class BootSector:
    """The FAT16 boot sector (volume boot record) of the virtual drive."""

    boot_sector: bytes = b"\xeb\x3c\x90MSD0S4.1"
    bytes_per_sector: int = 0x0200
    sectors_per_cluster: int = 0x08
    reserved_logical_sectors: int = 0x0001
    num_fats: int = 0x02
    max_root_dir_entries: int = ROOT_DIR_ENTRIES
    total_logical_sectors: int = 0x1F50
    media_descriptor: int = 0xF8
    logical_sectors_per_fat: int = 0x0001
    physical_sectors_per_track: int = 0x0001
    heads: int = 0x0001
    hidden_sectors: int = 0
    big_sectors_on_drive: int = 0
    physical_drive_number: int = 0
    not_used: int = 0
    boot_record_signature: int = 0x29
    volume_id: int = 0x27021974
    volume_label: bytes = b"DAPLINK-DND"
    file_system_type: bytes = b"FAT16   "
    bootstrap: bytes = BOOTSTRAP
    signature: int = 0xAA55

    @classmethod
    def for_disk(cls, disk_size: int) -> BootSector:
        """Build a boot sector describing a FAT16 volume of about disk_size bytes."""
        base = cls()
        total_sectors = (disk_size + 64 * 1024) // base.bytes_per_sector
        spc = base.sectors_per_cluster
        if total_sectors < FAT_CLUSTERS_MIN * spc:
            raise VfsError(f"disk size {disk_size} too small for FAT16")
        if total_sectors > FAT_CLUSTERS_MAX * spc:
            raise VfsError(f"disk size {disk_size} too large for FAT16")
        if total_sectors >= 0x10000:
            total_logical, big = 0, total_sectors
        else:
            total_logical, big = total_sectors, 0
        num_clusters = total_sectors // spc
        sectors_per_fat = (num_clusters * 2 + SECTOR_SIZE - 1) // SECTOR_SIZE
        return replace(
            base,
            total_logical_sectors=total_logical,
            big_sectors_on_drive=big,
            logical_sectors_per_fat=sectors_per_fat,
        )

    def pack(self) -> bytes:
        return _BOOT_FORMAT.pack(
            self.boot_sector,
            self.bytes_per_sector,
            self.sectors_per_cluster,
            self.reserved_logical_sectors,
            self.num_fats,
            self.max_root_dir_entries,
            self.total_logical_sectors,
            self.media_descriptor,
            self.logical_sectors_per_fat,
            self.physical_sectors_per_track,
            self.heads,
            self.hidden_sectors,
            self.big_sectors_on_drive,
            self.physical_drive_number,
            self.not_used,
            self.boot_record_signature,
            self.volume_id,
            self.volume_label,
            self.file_system_type,
            self.bootstrap,
            self.signature,
        )

    def total_size(self) -> int:
        """Size of the volume in bytes."""
        if self.total_logical_sectors > 0:
            return self.total_logical_sectors * self.bytes_per_sector
        if self.big_sectors_on_drive > 0:
            return self.big_sectors_on_drive * self.bytes_per_sector
        raise VfsError("boot sector has no sector count")