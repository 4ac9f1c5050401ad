"""Tests for the persisted upload log codec and writer."""

from pathlib import Path

import pytest

from folder_mirror.services.upload_log_service import (
    LedgerEntry,
    format_entry,
    open_upload_log_writer,
    parse_entry,
    read_upload_log,
)


class TestCodec:
    """Tests for format_entry / parse_entry."""

    def test_column_order(self) -> None:
        entry = LedgerEntry("/data/a.txt", "abc123", 42, 1700000000123, 1690000000456)

        assert format_entry(entry) == "/data/a.txt,abc123,42,1700000000123,1690000000456\n"

    def test_path_with_comma_is_quoted(self) -> None:
        """Test that awkward paths survive the CSV encoding."""
        entry = LedgerEntry('/data/a, "b".txt', "abc", 1, 2, 3)

        line = format_entry(entry)

        assert line.startswith('"')
        assert parse_entry(line.rstrip("\n")) == entry

    def test_wrong_field_count(self) -> None:
        with pytest.raises(ValueError):
            parse_entry("/a,abc,1,2")

    def test_non_integer_field(self) -> None:
        with pytest.raises(ValueError):
            parse_entry("/a,abc,one,2,3")

    def test_empty_path(self) -> None:
        with pytest.raises(ValueError):
            parse_entry(",abc,1,2,3")


class TestWriter:
    """Tests for open_upload_log_writer."""

    def test_no_path_returns_none(self) -> None:
        assert open_upload_log_writer("") is None
        assert open_upload_log_writer(None) is None

    def test_appends_to_existing_file(self, tmp_path: Path) -> None:
        log_path = tmp_path / "upload.log"
        log_path.write_text("/old,abc,1,2,3\n", encoding="utf-8")

        with open_upload_log_writer(log_path) as writer:
            writer.append(LedgerEntry("/new", "def", 4, 5, 6))

        assert [e.path for e in read_upload_log(log_path)] == ["/old", "/new"]
        assert writer.lines_written == 1

    def test_creates_parent_directory(self, tmp_path: Path) -> None:
        log_path = tmp_path / "nested" / "dir" / "upload.log"

        writer = open_upload_log_writer(log_path)

        assert writer is not None
        writer.close()
        assert log_path.exists()

    def test_unopenable_path_returns_none(self, tmp_path: Path) -> None:
        """Test that a log I/O failure is reported as no writer, not raised."""
        directory = tmp_path / "a-directory"
        directory.mkdir()

        assert open_upload_log_writer(directory) is None

    def test_each_line_is_flushed(self, tmp_path: Path) -> None:
        log_path = tmp_path / "upload.log"
        writer = open_upload_log_writer(log_path)
        assert writer is not None

        writer.append(LedgerEntry("/a", "abc", 1, 2, 3))

        assert log_path.read_text(encoding="utf-8") == "/a,abc,1,2,3\n"
        writer.close()


class TestReadUploadLog:
    """Tests for read_upload_log."""

    def test_undecodable_line_skipped(self, tmp_path: Path) -> None:
        """Test that a line with invalid UTF-8 is skipped like any malformed line."""
        log_path = tmp_path / "upload.log"
        log_path.write_bytes(b"/a.txt,abc,1,2,3\n/b\xff\xfe.txt,abc,1,2,3\n/c.txt,def,4,5,6\n")

        assert [e.path for e in read_upload_log(log_path)] == ["/a.txt", "/c.txt"]

    def test_crlf_line_endings(self, tmp_path: Path) -> None:
        log_path = tmp_path / "upload.log"
        log_path.write_bytes(b"/a.txt,abc,1,2,3\r\n")

        assert list(read_upload_log(log_path)) == [LedgerEntry("/a.txt", "abc", 1, 2, 3)]
