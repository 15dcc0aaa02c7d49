"""State machine that connects, disconnects and remounts the virtual drive."""

from __future__ import annotations

import threading
from collections.abc import Hashable
from enum import Enum, auto

from msdvfs.fat import DirEntry, FileAttr, FileChange
from msdvfs.transfer import FileTransfer, Status, Stream, TransferState
from msdvfs.user import UserFiles
from msdvfs.virtual_fs import VirtualFS

MAX_EVENT_TIME_MS = 60000

CONNECT_DELAY_MS = 0
# Must be above 1s for Windows, more for Linux.
RECONNECT_DELAY_MS = 2500
DISCONNECT_DELAY_TRANSFER_TIMEOUT_MS = 20000
DISCONNECT_DELAY_TRANSFER_IDLE_MS = 500
DISCONNECT_DELAY_MS = 500


class MountState(Enum):
    DISCONNECTED = auto()
    RECONNECTING = auto()
    CONNECTED = auto()


def _describe_status(status: object) -> tuple[str, int]:
    name = getattr(status, "name", str(status))
    return name.replace("_", " ").lower(), 0


def _erase_nothing() -> None:
    pass


class VfsManager:
    """Drives the mounted state of the drive and routes host sector access.

    ``stream`` consumes the data of files dragged onto the drive. ``user``
    provides the drive's own files; when it is ``None`` one is created that
    reports this manager's transfer status and remounts through it.
    """

    def __init__(self, stream: Stream, user: UserFiles | None = None, enable: bool = True) -> None:
        self._lock = threading.RLock()
        self._stream = stream
        self._fail_reason: object = Status.SUCCESS
        self._time_usb_idle = 0
        self.transfer: FileTransfer | None = None
        self.vfs: VirtualFS | None = None
        self.user = user or UserFiles(self.transfer_status, self.fs_remount, _describe_status, _erase_nothing)
        initial = MountState.CONNECTED if enable else MountState.DISCONNECTED
        self.state = initial
        self.next_state = initial
        self._build_filesystem()

    # Callable from anywhere

    def fs_enable(self, enable: bool) -> None:
        """Ask for the drive to be connected or disconnected."""
        with self._lock:
            if enable:
                if self.next_state is MountState.DISCONNECTED:
                    self.next_state = MountState.CONNECTED
            else:
                self.next_state = MountState.DISCONNECTED

    def fs_remount(self) -> None:
        """Ask for a remount if connected and not already changing state."""
        with self._lock:
            if not self._changing_state() and self.state is MountState.CONNECTED:
                self.next_state = MountState.RECONNECTING

    def abort_remount(self) -> None:
        """Cancel a pending remount."""
        with self._lock:
            if self.next_state is MountState.RECONNECTING and self.state is MountState.CONNECTED:
                self.next_state = MountState.CONNECTED

    # Callable only from the thread serving the drive

    def periodic(self, elapsed_ms: int) -> None:
        """Advance the state machine by elapsed_ms of host inactivity."""
        with self._lock:
            if not self._changing_state():
                return
            change_state = self._ready_for_state_change()
            if self._time_usb_idle < MAX_EVENT_TIME_MS:
                self._time_usb_idle += elapsed_ms
            if not change_state:
                return
            previous = self.state
            self.state = self.next_state
            if self.state is MountState.RECONNECTING:
                self.next_state = MountState.CONNECTED
            current = self.state
            self._time_usb_idle = 0

        if previous is MountState.CONNECTED:
            if not self.transfer.finished():
                self.transfer.transfer_timeout = True
                self.transfer.update_state(Status.SUCCESS)
            self.user.disconnecting()

        if current is MountState.CONNECTED:
            self._build_filesystem()

    def transfer_status(self) -> object:
        """Status of the last finished transfer, or SUCCESS if there has been none."""
        if self.transfer is not None and self.transfer.result is not None:
            return self.transfer.result
        return self._fail_reason

    def read_sectors(self, sector: int, num_sectors: int) -> bytes:
        """Sectors read by the host."""
        return self.vfs.read(sector, num_sectors)

    def write_sectors(self, sector: int, data: bytes) -> None:
        """Sectors written by the host."""
        # Every write restarts the idle timer so the drive does not detach mid-transfer.
        self._time_usb_idle = 0
        if self.transfer.finished():
            return
        self.vfs.write(sector, data)
        if self.transfer.finished():
            return
        self.transfer.data_received(sector, data)

    def _changing_state(self) -> bool:
        return self.state is not self.next_state

    def _build_filesystem(self) -> None:
        if self.transfer is not None and self.transfer.result is not None:
            self._fail_reason = self.transfer.result
        self.transfer = FileTransfer(self._stream, self.fs_remount, self.abort_remount)
        self.vfs = self.user.build_filesystem()
        self.vfs.set_file_change_callback(self._file_change_handler)

    def _ready_for_state_change(self) -> bool:
        timeout_ms = 0
        if self.state is MountState.CONNECTED:
            timeout_ms = {
                TransferState.NOT_STARTED: DISCONNECT_DELAY_MS,
                TransferState.FINISHED: DISCONNECT_DELAY_MS,
                TransferState.IN_PROGRESS: DISCONNECT_DELAY_TRANSFER_TIMEOUT_MS,
                TransferState.CAN_BE_FINISHED: DISCONNECT_DELAY_TRANSFER_IDLE_MS,
            }[self.transfer.state]
        elif self.state is MountState.DISCONNECTED and self.next_state is MountState.CONNECTED:
            timeout_ms = CONNECT_DELAY_MS
        elif self.state is MountState.RECONNECTING and self.next_state is MountState.CONNECTED:
            timeout_ms = RECONNECT_DELAY_MS
        return self._time_usb_idle > timeout_ms

    def _stream_type(self, filename: bytes) -> Hashable | None:
        return self._stream.type_from_name(filename)

    def _file_change_handler(
        self, filename: bytes, change: FileChange, file: DirEntry, new_file_data: DirEntry
    ) -> None:
        self.user.file_change_handler(filename, change, file, new_file_data)
        transfer = self.transfer
        if transfer.finished():
            return

        if change == FileChange.CHANGED:
            if file is transfer.file_to_program:
                transfer.update_file_info(
                    file,
                    self.vfs.file_start_sector(new_file_data),
                    new_file_data.filesize,
                    self._stream_type(filename),
                )
        elif change == FileChange.CREATED:
            stream_type = self._stream_type(filename)
            # Hidden files are skipped: some hosts keep transfer metadata in
            # hidden files with the same extension.
            if stream_type is not None and not (new_file_data.attributes & FileAttr.HIDDEN):
                transfer.update_file_info(
                    file,
                    self.vfs.file_start_sector(new_file_data),
                    new_file_data.filesize,
                    stream_type,
                )
        elif change == FileChange.DELETED:
            if file is transfer.file_to_program:
                transfer.reset_file_info()