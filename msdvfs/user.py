"""The files the drive presents to the host and the handling of magic files."""

from __future__ import annotations

from collections.abc import Callable
from enum import Enum, auto

from msdvfs.fat import FILENAME_LENGTH, SECTOR_SIZE, DirEntry, FileChange
from msdvfs.virtual_fs import VirtualFS

DRIVE_NAME = "bootloader"
DISK_SIZE = 64 * 1024 * 1024
EXPANSION_BUFFER_SIZE = 128

MAC_PLACEHOLDER = "123123123"
ASSERT_FILE = b"ASSERT  TXT"

NEED_BL_CONTENTS = (
    "A bootloader update was started but unable to complete.\r\n"
    "Reload the bootloader to fix this error message.\r\n"
)

# Error type names, starting from the least significant bit.
ERROR_TYPE_NAMES = ("internal", "transient", "user", "target", "interface")

_INTERFACE_CRC = 123

BuildHook = Callable[[VirtualFS], None]
ChangeHook = Callable[[bytes, FileChange, DirEntry, DirEntry], bool]
MagicFileHook = Callable[[bytes], "bool | None"]


class MagicFile(Enum):
    """Files with special names whose creation triggers an action or setting."""

    DAPLINK_MODE_ACTION = auto()
    TEST_ASSERT_ACTION = auto()
    REFRESH_ACTION = auto()
    ERASE_ACTION = auto()
    AUTO_RESET_CONFIG = auto()
    HARD_RESET_CONFIG = auto()
    AUTOMATION_ON_CONFIG = auto()
    AUTOMATION_OFF_CONFIG = auto()
    OVERFLOW_ON_CONFIG = auto()
    OVERFLOW_OFF_CONFIG = auto()
    MSD_ON_CONFIG = auto()
    MSD_OFF_CONFIG = auto()
    IMAGE_CHECK_ON_CONFIG = auto()
    IMAGE_CHECK_OFF_CONFIG = auto()
    PAGE_ERASE_ACTION = auto()
    CHIP_ERASE_ACTION = auto()


def _filename(name: str | bytes) -> bytes:
    raw = name.encode("latin-1") if isinstance(name, str) else bytes(name)
    return raw[:FILENAME_LENGTH].ljust(FILENAME_LENGTH, b"\x00")


_MAGIC_FILES: dict[bytes, MagicFile] = {
    _filename("daplink_mode_file_name"): MagicFile.DAPLINK_MODE_ACTION,
    _filename("ASSERT  ACT"): MagicFile.TEST_ASSERT_ACTION,
    _filename("REFRESH ACT"): MagicFile.REFRESH_ACTION,
    _filename("ERASE   ACT"): MagicFile.ERASE_ACTION,
    _filename("AUTO_RSTCFG"): MagicFile.AUTO_RESET_CONFIG,
    _filename("HARD_RSTCFG"): MagicFile.HARD_RESET_CONFIG,
    _filename("AUTO_ON CFG"): MagicFile.AUTOMATION_ON_CONFIG,
    _filename("AUTO_OFFCFG"): MagicFile.AUTOMATION_OFF_CONFIG,
    _filename("OVFL_ON CFG"): MagicFile.OVERFLOW_ON_CONFIG,
    _filename("OVFL_OFFCFG"): MagicFile.OVERFLOW_OFF_CONFIG,
    _filename("MSD_ON  CFG"): MagicFile.MSD_ON_CONFIG,
    _filename("MSD_OFF CFG"): MagicFile.MSD_OFF_CONFIG,
    _filename("COMP_ON CFG"): MagicFile.IMAGE_CHECK_ON_CONFIG,
    _filename("COMP_OFFCFG"): MagicFile.IMAGE_CHECK_OFF_CONFIG,
    _filename("PAGE_ON ACT"): MagicFile.PAGE_ERASE_ACTION,
    _filename("PAGE_OFFACT"): MagicFile.CHIP_ERASE_ACTION,
}


def expand_info(text: str, limit: int = EXPANSION_BUFFER_SIZE) -> str:
    """Replace each two-character ``@`` key in text with its value.

    ``@m``/``@M`` become the MAC placeholder, any other key becomes ``ERROR``.
    The text is first cut to ``limit - 1`` characters; expansion stops, leaving
    the rest untouched, once a replacement would not fit in ``limit``.
    """
    buf = text[: max(limit - 1, 0)]
    pos = 0
    while True:
        at = buf.find("@", pos)
        if at < 0:
            return buf
        key = buf[at + 1 : at + 2]
        insert = MAC_PLACEHOLDER if key in ("m", "M") else "ERROR"
        tail_len = len(buf) - at
        if at + len(insert) + tail_len - 2 >= limit:
            return buf
        buf = buf[:at] + insert + buf[at + 2 :]
        pos = at + len(insert)


def string_field(label: str, value: str) -> str:
    """A ``label: value`` line."""
    return f"{label}: {value}\r\n"


def setting_field(label: str, value: object) -> str:
    """A line holding 1 or 0 for a boolean setting."""
    return string_field(label, "1" if value else "0")


def uint32_field(label: str, value: int) -> str:
    """A line holding a 32-bit value in decimal."""
    return string_field(label, str(value & 0xFFFFFFFF))


def hex32_field(label: str, value: int) -> str:
    """A line holding a 32-bit value as eight hex digits."""
    return string_field(label, f"0x{value & 0xFFFFFFFF:08x}")


def _sector_reader(produce: Callable[[], str]) -> Callable[[int, int], bytes]:
    def read(sector_offset: int, num_sectors: int) -> bytes:
        data = produce().encode("latin-1")
        start = sector_offset * SECTOR_SIZE
        return data[start : start + num_sectors * SECTOR_SIZE]

    return read


class UserFiles:
    """Builds the informational files and reacts to files the host creates.

    ``get_status()`` returns the status of the last transfer; a status that is
    false (zero) means success. ``describe_error(status)`` returns a pair of the
    error message and its bit mask of error types. ``remount()`` asks for the
    drive to be remounted and ``erase_target()`` erases the target's flash.

    Optional hooks may be assigned after construction:
    ``build_hook(vfs)`` adds board-specific files; ``change_hook(...)`` returns
    True when it fully handled a directory change; ``magic_file_hook(name)``
    returns None if unhandled, otherwise whether to remount.
    """

    def __init__(
        self,
        get_status: Callable[[], object],
        remount: Callable[[], None],
        describe_error: Callable[[object], tuple[str, int]],
        erase_target: Callable[[], None],
    ) -> None:
        self._get_status = get_status
        self._remount = remount
        self._describe_error = describe_error
        self._erase_target = erase_target
        self.remount_count = 0
        self.assertion = False
        self.build_hook: BuildHook | None = None
        self.change_hook: ChangeHook | None = None
        self.magic_file_hook: MagicFileHook | None = None

    def build_filesystem(self, vfs: VirtualFS | None = None) -> VirtualFS:
        """Add the informational files to vfs, creating a fresh volume if none is given."""
        if vfs is None:
            vfs = VirtualFS(DRIVE_NAME, DISK_SIZE)
        files: list[tuple[str, Callable[[], str]]] = [("DETAILS TXT", self.details_text)]
        if self._get_status():
            files.append(("FAIL    TXT", self.fail_text))
        files.append(("NEED_BL TXT", self.need_bl_text))
        for name, produce in files:
            size = len(produce().encode("latin-1"))
            vfs.create_file(name, _sector_reader(produce), None, size)
        if self.build_hook is not None:
            self.build_hook(vfs)
        return vfs

    def file_change_handler(
        self, filename: str | bytes, change: FileChange, file: DirEntry, new_file_data: DirEntry
    ) -> None:
        """React to a change the host made to the root directory."""
        name = _filename(filename)
        if self.change_hook is not None and self.change_hook(name, change, file, new_file_data):
            return

        if change == FileChange.CREATED:
            do_remount = self.magic_file_hook(name) if self.magic_file_hook is not None else None
            if do_remount is None:
                do_remount = self._handle_magic_file(_MAGIC_FILES.get(name))
            if do_remount:
                self._remount()
        elif change == FileChange.DELETED:
            if name == ASSERT_FILE:
                self.assertion = False
                self._remount()

    def _handle_magic_file(self, which: MagicFile | None) -> bool:
        if which is None:
            return False
        if which is MagicFile.TEST_ASSERT_ACTION:
            self.assertion = True
            return False
        if which is MagicFile.ERASE_ACTION:
            self._erase_target()
        return True

    def disconnecting(self) -> None:
        """Record that the drive is being disconnected."""
        self.remount_count += 1

    def details_text(self) -> str:
        """Contents of DETAILS.TXT."""
        return "".join(
            [
                "# DAPLink Firmware\r\n",
                "Build ID:  ()\r\n",
                expand_info("Unique ID: @U\r\n"),
                expand_info("HIC ID: @D\r\n"),
                "Git SHA: \r\n",
                "Local Mods: 0\r\n",
                "USB Interfaces: \r\n",
                hex32_field("Interface CRC", _INTERFACE_CRC),
                uint32_field("Remount count", self.remount_count),
                expand_info("URL: @R\r\n"),
            ]
        )

    def fail_text(self) -> str:
        """Contents of FAIL.TXT describing the last transfer's status."""
        message, error_type = self._describe_error(self._get_status())
        parts = [string_field("error", message), "type: "]
        first = True
        for name in ERROR_TYPE_NAMES:
            if not error_type:
                break
            if not first:
                parts.append(", ")
            if error_type & 1:
                parts.append(name)
                first = False
            error_type >>= 1
        parts.append("\r\n")
        return "".join(parts)

    def need_bl_text(self) -> str:
        """Contents of NEED_BL.TXT."""
        return NEED_BL_CONTENTS