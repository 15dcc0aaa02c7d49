"""Tracking of a file being dragged onto the drive and streamed to the target."""

from __future__ import annotations

from collections.abc import Callable, Hashable
from enum import Enum, IntEnum, auto
from typing import Optional, Protocol

from msdvfs.fat import INVALID_SECTOR, SECTOR_SIZE, DirEntry, VfsError

_UINT32_MASK = 0xFFFFFFFF


class Status(IntEnum):
    """Outcome of a transfer or of a stream operation; zero means success."""

    SUCCESS = 0
    SUCCESS_DONE = auto()
    SUCCESS_DONE_OR_CONTINUE = auto()
    ERROR_DURING_TRANSFER = auto()
    OOO_SECTOR = auto()
    TRANSFER_TIMEOUT = auto()


class TransferState(Enum):
    NOT_STARTED = auto()
    IN_PROGRESS = auto()
    CAN_BE_FINISHED = auto()
    FINISHED = auto()


class Stream(Protocol):
    """The consumer of file data, typically a flash programmer.

    A stream type is any hashable value; ``None`` means no stream.
    """

    def type_from_name(self, filename: bytes) -> Optional[Hashable]: ...

    def identify(self, data: bytes) -> Optional[Hashable]: ...

    def open(self, stream_type: Hashable) -> object: ...

    def write(self, data: bytes) -> object: ...

    def close(self) -> object: ...


class FileTransfer:
    """State of one transfer, driven by directory changes and sector data.

    The end of a file is never known for sure, so a transfer finishes either
    when the stream reports it is done and the directory agrees, on an error,
    or when the owner sets ``transfer_timeout`` and calls :meth:`update_state`.
    The final status is stored in ``result`` (``None`` until finished).
    ``stream_closed_hook``, if set, is called after the stream finished on its own.
    """

    def __init__(
        self,
        stream: Stream,
        on_remount: Callable[[], None] | None = None,
        on_abort_remount: Callable[[], None] | None = None,
    ) -> None:
        self._stream = stream
        self._on_remount = on_remount
        self._on_abort_remount = on_abort_remount
        self.stream_closed_hook: Callable[[], None] | None = None
        self.result: object | None = None
        self._reset()

    def _reset(self) -> None:
        self.file_to_program: DirEntry | None = None
        self.start_sector = INVALID_SECTOR
        self.file_start_sector = INVALID_SECTOR
        self.file_next_sector = INVALID_SECTOR
        self.last_ooo_sector = INVALID_SECTOR
        self.size_processed = 0
        self.file_size = 0
        self.size_transferred = 0
        self.state = TransferState.NOT_STARTED
        self.is_stream_open = False
        self.stream_started = False
        self.stream_finished = False
        self.stream_optional_finish = False
        self.file_info_optional_finish = False
        self.transfer_timeout = False
        self.stream_type: Hashable | None = None

    def finished(self) -> bool:
        """True once the transfer has ended, successfully or not."""
        return self.state is TransferState.FINISHED

    def update_file_info(
        self, file: DirEntry | None, start_sector: int, size: int, stream_type: Hashable | None
    ) -> None:
        """Record what the root directory says about the file being transferred."""
        if self.finished():
            raise VfsError("file info update after the transfer finished")

        if self.file_to_program is None:
            self.file_to_program = file
        if self.file_start_sector == INVALID_SECTOR:
            self.file_start_sector = start_sector
        if self.stream_type is None:
            self.stream_type = stream_type

        # The file may only grow, or shrink below what has been transferred.
        if size < self.file_size and size < self.size_transferred and size > 0:
            self.update_state(Status.ERROR_DURING_TRANSFER)
            return
        if start_sector != INVALID_SECTOR and start_sector != self.file_start_sector:
            self.update_state(Status.ERROR_DURING_TRANSFER)
            return
        if stream_type is not None and stream_type != self.stream_type:
            self.update_state(Status.ERROR_DURING_TRANSFER)
            return

        self.file_size = size
        self.update_state(Status.SUCCESS)

    def reset_file_info(self) -> None:
        """Forget the file after it was deleted from the directory."""
        if self.stream_started:
            self.file_to_program = None
            self.file_start_sector = INVALID_SECTOR
            self.file_size = 0
        else:
            self._reset()
            if self._on_abort_remount is not None:
                self._on_abort_remount()

    def stream_open(self, stream_type: Hashable, start_sector: int) -> None:
        """Open the stream for data starting at start_sector."""
        if self.is_stream_open:
            raise VfsError("stream is already open")
        if start_sector == INVALID_SECTOR:
            raise VfsError("stream cannot start at an invalid sector")

        if self.start_sector == INVALID_SECTOR:
            self.start_sector = start_sector
        if self.stream_type is None:
            self.stream_type = stream_type

        if start_sector != self.start_sector:
            self.update_state(Status.ERROR_DURING_TRANSFER)
            return
        if stream_type != self.stream_type:
            self.update_state(Status.ERROR_DURING_TRANSFER)
            return

        status = self._stream.open(stream_type)
        if status == Status.SUCCESS:
            self.file_next_sector = start_sector
            self.is_stream_open = True
            self.stream_started = True
        self.update_state(status)

    def stream_data(self, sector: int, data: bytes) -> None:
        """Pass whole sectors of file data to the open stream."""
        if self.stream_finished:
            raise VfsError("data written after the stream finished")
        if len(data) % SECTOR_SIZE:
            raise ValueError(f"data length {len(data)} is not a multiple of {SECTOR_SIZE}")
        if not self.is_stream_open:
            raise VfsError("stream is not open")

        status = self._stream.write(data)
        if status == Status.SUCCESS_DONE:
            status = self._stream.close()
            self.is_stream_open = False
            self.stream_finished = True
            self.stream_optional_finish = True
            if self.stream_closed_hook is not None:
                self.stream_closed_hook()
        elif status == Status.SUCCESS_DONE_OR_CONTINUE:
            status = Status.SUCCESS
            self.stream_optional_finish = True
        else:
            self.stream_optional_finish = False

        self.size_processed += len(data)
        self.update_state(status)

    def data_received(self, sector: int, data: bytes) -> None:
        """Handle sectors written by the host, detecting the start of a file."""
        data = bytes(data)
        num_sectors = len(data) // SECTOR_SIZE

        if not self.stream_started:
            stream_type = self._stream.identify(data)
            if stream_type is not None:
                self.stream_open(stream_type, sector)

        if not self.stream_started:
            return
        if sector < self.start_sector:
            return

        if sector != self.file_next_sector:
            if sector < self.file_next_sector:
                if self.last_ooo_sector == INVALID_SECTOR:
                    self.last_ooo_sector = sector
                self.last_ooo_sector = min(self.last_ooo_sector, sector)
            return

        size = SECTOR_SIZE * num_sectors
        self.size_transferred += size
        self.file_next_sector = sector + num_sectors

        if self.stream_finished:
            self.update_state(Status.SUCCESS)
            return

        self.stream_data(sector, data)

    def update_state(self, status: object) -> None:
        """Work out whether the transfer is in progress, can finish or has finished."""
        if status in (Status.SUCCESS_DONE, Status.SUCCESS_DONE_OR_CONTINUE):
            raise ValueError(f"{status!r} is not a transfer status")
        if self.finished():
            raise VfsError("transfer already finished")

        local_status = status
        self.file_info_optional_finish = (
            self.file_to_program is not None
            and self.size_transferred >= self.file_size
            and self.file_size > 0
            and self.start_sector == self.file_start_sector
        )
        transfer_timeout = self.transfer_timeout
        transfer_started = self.file_to_program is not None or self.stream_type is not None
        can_be_finished = self.file_info_optional_finish and self.stream_optional_finish
        must_be_finished = self.stream_finished and self.file_info_optional_finish

        out_of_order = False
        if self.last_ooo_sector != INVALID_SECTOR:
            if self.start_sector == INVALID_SECTOR:
                raise VfsError("out of order sector recorded before the stream started")
            offset = ((self.last_ooo_sector - self.start_sector) * SECTOR_SIZE) & _UINT32_MASK
            out_of_order = offset < self.size_processed

        if local_status != Status.SUCCESS:
            self.state = TransferState.FINISHED
        elif transfer_timeout:
            if out_of_order:
                local_status = Status.OOO_SECTOR
            elif not transfer_started or can_be_finished:
                local_status = Status.SUCCESS
            else:
                local_status = Status.TRANSFER_TIMEOUT
            self.state = TransferState.FINISHED
        elif must_be_finished:
            self.state = TransferState.FINISHED
        elif can_be_finished:
            self.state = TransferState.CAN_BE_FINISHED
        elif transfer_started:
            self.state = TransferState.IN_PROGRESS

        if self.finished():
            if self.is_stream_open:
                close_status = self._stream.close()
                self.is_stream_open = False
                if local_status == Status.SUCCESS:
                    local_status = close_status
            self.result = local_status

        # A change not caused by a remount timing out asks for a remount.
        if not transfer_timeout and self._on_remount is not None:
            self._on_remount()