"""Tests for the local file saver."""

import asyncio
import base64

import pytest
import requests

from batch_imagegen.saver import DownloadError, LocalFileSaver, UnsupportedEnvironmentError, decode_data_url


PNG_BYTES = b"\x89PNG\r\n\x1a\nfake"
DATA_URL = "data:image/png;base64," + base64.b64encode(PNG_BYTES).decode("ascii")


class FakeResponse:
    def __init__(self, chunks, status_code=200, headers=None, reason="OK"):
        self.chunks = chunks
        self.status_code = status_code
        self.ok = status_code < 400
        self.reason = reason
        self.headers = headers or {"Content-Type": "image/png"}

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def iter_content(self, chunk_size=1):
        yield from self.chunks


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requests = []

    def get(self, url, **kwargs):
        self.requests.append((url, kwargs))
        if self.error:
            raise self.error
        return self.response


def test_decode_data_url():
    mime_type, payload = decode_data_url(DATA_URL)
    assert mime_type == "image/png"
    assert payload == PNG_BYTES

    with pytest.raises(DownloadError):
        decode_data_url("data:image/png,notbase64")
    with pytest.raises(DownloadError):
        decode_data_url("data:image/png;base64,***")


def test_saves_data_url(tmp_path):
    saver = LocalFileSaver(str(tmp_path))
    progress = []

    path = asyncio.run(saver.save(DATA_URL, "task/a.png", progress=lambda *args: progress.append(args)))

    assert (tmp_path / "task" / "a.png").read_bytes() == PNG_BYTES
    assert path == str((tmp_path / "task" / "a.png").resolve())
    assert progress == [(len(PNG_BYTES), len(PNG_BYTES), 0.0)]


def test_downloads_http_source(tmp_path):
    session = FakeSession(FakeResponse([b"abc", b"", b"def"], headers={"Content-Type": "image/png",
                                                                       "Content-Length": "6"}))
    saver = LocalFileSaver(str(tmp_path), session=session, timeout=5)
    progress = []

    async def scenario():
        path = await saver.save("https://img.example/a.png", "a.png",
                                progress=lambda *args: progress.append(args))
        await asyncio.sleep(0)
        return path

    path = asyncio.run(scenario())
    assert (tmp_path / "a.png").read_bytes() == b"abcdef"
    assert path.endswith("a.png")
    assert session.requests[0][1]["stream"] is True
    assert session.requests[0][1]["timeout"] == 5
    assert [args[:2] for args in progress] == [(3, 6), (6, 6)]


def test_http_error_status_raises(tmp_path):
    session = FakeSession(FakeResponse([], status_code=404, reason="Not Found"))
    saver = LocalFileSaver(str(tmp_path), session=session)

    with pytest.raises(DownloadError, match="HTTP 404"):
        asyncio.run(saver.save("https://img.example/missing.png", "m.png"))


def test_html_page_is_rejected_and_partial_file_removed(tmp_path):
    session = FakeSession(FakeResponse([b"<html>"], headers={"Content-Type": "text/html; charset=utf-8"}))
    saver = LocalFileSaver(str(tmp_path), session=session)

    with pytest.raises(DownloadError):
        asyncio.run(saver.save("https://img.example/login", "page.png"))
    assert not (tmp_path / "page.png").exists()


def test_empty_body_is_rejected(tmp_path):
    saver = LocalFileSaver(str(tmp_path), session=FakeSession(FakeResponse([])))

    with pytest.raises(DownloadError, match="Empty"):
        asyncio.run(saver.save("https://img.example/empty.png", "empty.png"))
    assert not (tmp_path / "empty.png").exists()


def test_network_error_becomes_download_error(tmp_path):
    saver = LocalFileSaver(str(tmp_path), session=FakeSession(error=requests.ConnectionError("refused")))

    with pytest.raises(DownloadError, match="refused"):
        asyncio.run(saver.save("https://img.example/a.png", "a.png"))


def test_unsupported_scheme(tmp_path):
    saver = LocalFileSaver(str(tmp_path))
    with pytest.raises(UnsupportedEnvironmentError):
        asyncio.run(saver.save("blob:https://app.example/1", "b.png"))


def test_destination_must_stay_inside_base_dir(tmp_path):
    saver = LocalFileSaver(str(tmp_path / "out"))
    with pytest.raises(DownloadError):
        saver.resolve("../escape.png")
    assert saver.resolve("ok/x.png") == (tmp_path / "out" / "ok" / "x.png").resolve()


def test_validate_creates_directory(tmp_path):
    target = tmp_path / "new" / "dir"
    saver = LocalFileSaver(str(target))
    assert saver.validate()
    assert target.is_dir()
    assert not (target / ".write_test").exists()
