import pytest
import requests

from phenoharm.data import download


class _FakeResponse:
    def __init__(self, body: bytes = b"", status: int = 200):
        self.body = body
        self.status = status
        self.headers = {'content-length': str(len(body))}
        self.closed = False

    def raise_for_status(self) -> None:
        if self.status >= 400:
            raise requests.HTTPError(f"{self.status} error")

    def iter_content(self, chunk_size: int = 1):
        for start in range(0, len(self.body), chunk_size):
            yield self.body[start:start + chunk_size]

    def close(self) -> None:
        self.closed = True


def _patch_get(monkeypatch, responses):
    calls = []

    def fake_get(url, stream=False, timeout=None):
        calls.append(url)
        return responses[url]

    monkeypatch.setattr(download.requests, "get", fake_get)
    return calls


def test_resolve_url_joins_with_single_slash() -> None:
    assert download.resolve_url("http://host/data/", "/file.txt") == "http://host/data/file.txt"
    assert download.resolve_url("http://host/data", "file.txt") == "http://host/data/file.txt"


def test_fetch_file_streams_body_to_destination(tmp_path, monkeypatch) -> None:
    response = _FakeResponse(b"subject_id\theight\na\t150\n")
    calls = _patch_get(monkeypatch, {"http://host/a.txt": response})

    path = download.fetch_file("http://host/a.txt", tmp_path / "sub" / "a.txt", chunk_size=4, verbose=False)

    assert path.read_bytes() == response.body
    assert calls == ["http://host/a.txt"]
    assert response.closed
    assert [p.name for p in path.parent.iterdir()] == ["a.txt"]


def test_fetch_file_reuses_existing_copy(tmp_path, monkeypatch) -> None:
    dest = tmp_path / "a.txt"
    dest.write_text("local")
    calls = _patch_get(monkeypatch, {})

    assert download.fetch_file("http://host/a.txt", dest, verbose=False) == dest
    assert calls == []
    assert dest.read_text() == "local"


def test_fetch_file_overwrite_downloads_again(tmp_path, monkeypatch) -> None:
    dest = tmp_path / "a.txt"
    dest.write_text("old")
    _patch_get(monkeypatch, {"http://host/a.txt": _FakeResponse(b"new")})

    download.fetch_file("http://host/a.txt", dest, overwrite=True, verbose=False)

    assert dest.read_text() == "new"


def test_fetch_file_http_error_leaves_no_partial_file(tmp_path, monkeypatch) -> None:
    response = _FakeResponse(b"not found", status=404)
    _patch_get(monkeypatch, {"http://host/a.txt": response})

    with pytest.raises(requests.HTTPError):
        download.fetch_file("http://host/a.txt", tmp_path / "a.txt", verbose=False)

    assert list(tmp_path.iterdir()) == []
    assert response.closed


def test_fetch_study_files_and_missing_files(tmp_path, monkeypatch) -> None:
    responses = {
        "http://host/data/pheno_data_study_1.txt": _FakeResponse(b"1"),
        "http://host/data/pheno_data_study_2.txt": _FakeResponse(b"2"),
    }
    calls = _patch_get(monkeypatch, responses)
    names = ["pheno_data_study_1.txt", "pheno_data_study_2.txt"]

    before = download.missing_files([tmp_path / n for n in names])
    paths = download.fetch_study_files("http://host/data/", names, tmp_path, verbose=False)
    after = download.missing_files(paths)

    assert all(before.values())
    assert not any(after.values())
    assert [p.read_text() for p in paths] == ["1", "2"]
    assert calls == list(responses)
