import pytest

from msdvfs.fat import INVALID_SECTOR, SECTOR_SIZE, DirEntry, VfsError
from msdvfs.transfer import FileTransfer, Status, TransferState

MAGIC = b"BIN!"


class FakeStream:
    def __init__(self, done_after=None, open_status=Status.SUCCESS, close_status=Status.SUCCESS,
                 write_status=Status.SUCCESS):
        self.done_after = done_after
        self.open_status = open_status
        self.close_status = close_status
        self.write_status = write_status
        self.written = b""
        self.opened = []
        self.closes = 0

    def type_from_name(self, filename):
        return "bin" if filename.endswith(b"BIN") else None

    def identify(self, data):
        return "bin" if data.startswith(MAGIC) else None

    def open(self, stream_type):
        self.opened.append(stream_type)
        return self.open_status

    def write(self, data):
        self.written += data
        if self.done_after is not None and len(self.written) >= self.done_after:
            return Status.SUCCESS_DONE
        return self.write_status

    def close(self):
        self.closes += 1
        return self.close_status


def first_sector():
    return MAGIC.ljust(SECTOR_SIZE, b"\x01")


def plain_sector():
    return bytes([0x02]) * SECTOR_SIZE


@pytest.fixture
def counters():
    return {"remount": 0, "abort": 0}


def make(stream, counters):
    def remount():
        counters["remount"] += 1

    def abort():
        counters["abort"] += 1

    return FileTransfer(stream, remount, abort)


def test_complete_transfer_succeeds(counters):
    stream = FakeStream(done_after=2 * SECTOR_SIZE)
    transfer = make(stream, counters)
    entry = DirEntry(filename=b"IMAGE   BIN")
    transfer.update_file_info(entry, 100, 2 * SECTOR_SIZE, "bin")
    assert transfer.state is TransferState.IN_PROGRESS

    transfer.data_received(100, first_sector())
    assert not transfer.finished()
    transfer.data_received(101, plain_sector())

    assert transfer.finished()
    assert transfer.result == Status.SUCCESS
    assert stream.closes == 1
    assert stream.opened == ["bin"]
    assert stream.written == first_sector() + plain_sector()
    assert counters["remount"] > 0


def test_start_sector_change_is_an_error(counters):
    transfer = make(FakeStream(), counters)
    entry = DirEntry(filename=b"IMAGE   BIN")
    transfer.update_file_info(entry, 100, SECTOR_SIZE, "bin")
    transfer.update_file_info(entry, 200, SECTOR_SIZE, "bin")
    assert transfer.finished()
    assert transfer.result == Status.ERROR_DURING_TRANSFER


def test_stream_type_change_is_an_error(counters):
    transfer = make(FakeStream(), counters)
    entry = DirEntry(filename=b"IMAGE   BIN")
    transfer.update_file_info(entry, 100, SECTOR_SIZE, "bin")
    transfer.update_file_info(entry, 100, SECTOR_SIZE, "hex")
    assert transfer.result == Status.ERROR_DURING_TRANSFER


def test_shrinking_file_is_an_error_and_closes_stream(counters):
    stream = FakeStream()
    transfer = make(stream, counters)
    entry = DirEntry(filename=b"IMAGE   BIN")
    transfer.update_file_info(entry, 100, 4 * SECTOR_SIZE, "bin")
    transfer.data_received(100, first_sector() + plain_sector())
    assert transfer.is_stream_open
    transfer.update_file_info(entry, 100, SECTOR_SIZE, "bin")
    assert transfer.result == Status.ERROR_DURING_TRANSFER
    assert stream.closes == 1
    assert not transfer.is_stream_open


def test_timeout_without_transfer_is_success(counters):
    transfer = make(FakeStream(), counters)
    transfer.transfer_timeout = True
    transfer.update_state(Status.SUCCESS)
    assert transfer.finished()
    assert transfer.result == Status.SUCCESS
    assert counters["remount"] == 0


def test_timeout_during_transfer(counters):
    stream = FakeStream()
    transfer = make(stream, counters)
    transfer.update_file_info(DirEntry(filename=b"IMAGE   BIN"), 100, 4 * SECTOR_SIZE, "bin")
    transfer.data_received(100, first_sector())
    transfer.transfer_timeout = True
    transfer.update_state(Status.SUCCESS)
    assert transfer.result == Status.TRANSFER_TIMEOUT
    assert stream.closes == 1


def test_out_of_order_sector_reported_on_timeout(counters):
    transfer = make(FakeStream(), counters)
    transfer.data_received(100, first_sector())
    transfer.data_received(101, plain_sector())
    transfer.data_received(100, first_sector())
    assert transfer.last_ooo_sector == 100
    assert transfer.size_transferred == 2 * SECTOR_SIZE
    transfer.transfer_timeout = True
    transfer.update_state(Status.SUCCESS)
    assert transfer.result == Status.OOO_SECTOR


def test_sectors_before_start_and_gaps_are_ignored(counters):
    stream = FakeStream()
    transfer = make(stream, counters)
    transfer.data_received(100, first_sector())
    transfer.data_received(50, plain_sector())
    transfer.data_received(105, plain_sector())
    assert transfer.size_transferred == SECTOR_SIZE
    assert stream.written == first_sector()
    assert transfer.last_ooo_sector == INVALID_SECTOR
    assert transfer.file_next_sector == 101


def test_unrecognised_data_does_not_start_stream(counters):
    stream = FakeStream()
    transfer = make(stream, counters)
    transfer.data_received(100, plain_sector())
    assert not transfer.stream_started
    assert stream.opened == []
    assert transfer.state is TransferState.NOT_STARTED


def test_update_after_finish_raises(counters):
    transfer = make(FakeStream(), counters)
    transfer.update_state(Status.ERROR_DURING_TRANSFER)
    with pytest.raises(VfsError):
        transfer.update_file_info(None, 100, SECTOR_SIZE, "bin")
    with pytest.raises(VfsError):
        transfer.update_state(Status.SUCCESS)


def test_done_statuses_are_rejected(counters):
    transfer = make(FakeStream(), counters)
    with pytest.raises(ValueError):
        transfer.update_state(Status.SUCCESS_DONE)
    with pytest.raises(ValueError):
        transfer.update_state(Status.SUCCESS_DONE_OR_CONTINUE)


def test_reset_before_stream_start_aborts_remount(counters):
    transfer = make(FakeStream(), counters)
    entry = DirEntry(filename=b"IMAGE   BIN")
    transfer.update_file_info(entry, 100, SECTOR_SIZE, "bin")
    transfer.reset_file_info()
    assert counters["abort"] == 1
    assert transfer.file_to_program is None
    assert transfer.stream_type is None
    assert transfer.state is TransferState.NOT_STARTED


def test_reset_after_stream_start_keeps_stream(counters):
    transfer = make(FakeStream(), counters)
    entry = DirEntry(filename=b"IMAGE   BIN")
    transfer.update_file_info(entry, 100, 4 * SECTOR_SIZE, "bin")
    transfer.data_received(100, first_sector())
    transfer.reset_file_info()
    assert counters["abort"] == 0
    assert transfer.stream_started
    assert transfer.file_to_program is None
    assert transfer.file_start_sector == INVALID_SECTOR
    assert transfer.file_size == 0
    assert transfer.stream_type == "bin"


def test_stream_open_failure_finishes_transfer(counters):
    stream = FakeStream(open_status=Status.ERROR_DURING_TRANSFER)
    transfer = make(stream, counters)
    transfer.data_received(100, first_sector())
    assert transfer.finished()
    assert transfer.result == Status.ERROR_DURING_TRANSFER
    assert not transfer.stream_started
    assert stream.written == b""


def test_done_or_continue_allows_finish(counters):
    stream = FakeStream(write_status=Status.SUCCESS_DONE_OR_CONTINUE)
    transfer = make(stream, counters)
    transfer.update_file_info(DirEntry(filename=b"IMAGE   BIN"), 100, SECTOR_SIZE, "bin")
    transfer.data_received(100, first_sector())
    assert transfer.state is TransferState.CAN_BE_FINISHED
    assert transfer.stream_optional_finish
    transfer.transfer_timeout = True
    transfer.update_state(Status.SUCCESS)
    assert transfer.result == Status.SUCCESS


def test_close_error_becomes_result(counters):
    stream = FakeStream(write_status=Status.SUCCESS_DONE_OR_CONTINUE,
                        close_status=Status.ERROR_DURING_TRANSFER)
    transfer = make(stream, counters)
    transfer.update_file_info(DirEntry(filename=b"IMAGE   BIN"), 100, SECTOR_SIZE, "bin")
    transfer.data_received(100, first_sector())
    transfer.transfer_timeout = True
    transfer.update_state(Status.SUCCESS)
    assert transfer.result == Status.ERROR_DURING_TRANSFER
    assert stream.closes == 1


def test_stream_data_requires_open_stream_and_whole_sectors(counters):
    transfer = make(FakeStream(), counters)
    with pytest.raises(VfsError):
        transfer.stream_data(0, plain_sector())
    transfer.stream_open("bin", 10)
    with pytest.raises(ValueError):
        transfer.stream_data(10, b"abc")


def test_stream_open_twice_raises(counters):
    transfer = make(FakeStream(), counters)
    transfer.stream_open("bin", 10)
    assert transfer.is_stream_open
    with pytest.raises(VfsError):
        transfer.stream_open("bin", 10)
    with pytest.raises(VfsError):
        make(FakeStream(), counters).stream_open("bin", INVALID_SECTOR)


def test_data_after_stream_done_is_counted_not_written(counters):
    stream = FakeStream(done_after=SECTOR_SIZE)
    transfer = make(stream, counters)
    transfer.data_received(100, first_sector())
    assert transfer.stream_finished
    assert not transfer.finished()
    transfer.data_received(101, plain_sector())
    assert stream.written == first_sector()
    assert transfer.size_transferred == 2 * SECTOR_SIZE
    assert stream.closes == 1