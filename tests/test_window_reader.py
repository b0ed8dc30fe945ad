import io
import os
import tempfile
from unittest.mock import MagicMock

from movie_server import END, FileStream, ThroughputMeter, WindowReader

DATA = bytes(range(256)) * 40  # 10240 bytes


def _write_sample(td):
    p = os.path.join(td, "sample.bin")
    with open(p, "wb") as f:
        f.write(DATA)
    return p


def test_reads_are_relative_to_base_offset():
    with tempfile.TemporaryDirectory() as td:
        r = WindowReader.open(_write_sample(td), 100, 1000)
        try:
            assert r.read(0, 10) == DATA[100:110]
            assert r.read(500, 16) == DATA[600:616]
            # out of order pulls still land on the right bytes
            assert r.read(5, 5) == DATA[105:110]
        finally:
            r.close()


def test_read_never_crosses_window_end():
    with tempfile.TemporaryDirectory() as td:
        r = WindowReader.open(_write_sample(td), 0, 50)
        try:
            assert r.read(40, 4096) == DATA[40:50]
            assert r.read(50, 4096) == END
        finally:
            r.close()


def test_nothing_is_read_after_end_of_stream():
    with tempfile.TemporaryDirectory() as td:
        r = WindowReader.open(_write_sample(td), 0, 64)
        try:
            assert r.read(64, 10) == END
            assert r.read(0, 10) == END
        finally:
            r.close()


def test_eof_before_window_end_is_end_of_stream():
    with tempfile.TemporaryDirectory() as td:
        # window claims more bytes than the file holds
        r = WindowReader.open(_write_sample(td), len(DATA) - 8, 100)
        try:
            assert r.read(0, 100) == DATA[-8:]
            assert r.read(8, 100) == END
        finally:
            r.close()


def test_io_error_is_end_of_stream():
    f = MagicMock()
    f.read.side_effect = OSError("disk gone")
    r = WindowReader(f, 0, 1000)
    assert r.read(0, 10) == END
    assert r.read(10, 10) == END
    assert f.read.call_count == 1


def test_close_is_idempotent():
    with tempfile.TemporaryDirectory() as td:
        r = WindowReader.open(_write_sample(td), 0, 10)
        r.close()
        r.close()
        assert r.closed
        assert r.read(0, 10) == END


def test_file_stream_release_runs_once(capsys):
    with tempfile.TemporaryDirectory() as td:
        reader = WindowReader.open(_write_sample(td), 0, len(DATA))
        meter = ThroughputMeter(clock=lambda: 0.0)
        body = FileStream(reader, meter)
        meter.record(len(reader.read(0, 1024)))
        body.release()
        body.release()
        assert body.released
        assert body.state == "aborted"
        assert reader.closed
        out = capsys.readouterr().out
        assert out.count("Done. Total sent:") == 1


def test_file_stream_keeps_complete_state():
    with tempfile.TemporaryDirectory() as td:
        out = io.StringIO()
        body = FileStream(WindowReader.open(_write_sample(td), 0, 10), ThroughputMeter(out=out))
        body.state = "complete"
        body.release()
        assert body.state == "complete"
        assert out.getvalue() == "\nDone. Total sent: 0.00 MB\n"
