import gzip
import io
import os
import subprocess
import sys
import tarfile
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path

import pytest

from pgharness import pg
from pgharness.pg import (
    PG,
    HarnessError,
    UnsupportedPlatformError,
    UnsupportedVersionError,
    cache_root,
    check_platform,
    download_and_extract,
    ensure_binaries,
    extract_tarball,
    init_db,
    is_supported_version,
    pg_env,
    pick_port,
    start_pg,
    start_postgres,
    wait_ready,
)


def _make_tarball() -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as archive:
        info = tarfile.TarInfo("bin")
        info.type = tarfile.DIRTYPE
        info.mode = 0o755
        archive.addfile(info)

        data = b"#!/bin/sh\nexit 0\n"
        info = tarfile.TarInfo("bin/postgres")
        info.size = len(data)
        info.mode = 0o755
        archive.addfile(info, io.BytesIO(data))

        info = tarfile.TarInfo("lib/libpq.so.5")
        info.type = tarfile.SYMTYPE
        info.linkname = "libpq.so.5.17"
        archive.addfile(info)

        evil = b"nope"
        info = tarfile.TarInfo("../escape.txt")
        info.size = len(evil)
        archive.addfile(info, io.BytesIO(evil))
    return buf.getvalue()


def _script(path: Path, body: str) -> Path:
    path.write_text(f"#!{sys.executable}\n{body}")
    path.chmod(0o755)
    return path


@pytest.fixture
def http_server():
    routes = {}

    class Handler(BaseHTTPRequestHandler):
        def do_GET(self):
            status, body = routes.get(self.path, (404, b""))
            self.send_response(status)
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, *args):
            pass

    server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}", routes
    server.shutdown()
    server.server_close()


def test_supported_versions():
    assert is_supported_version("17.6")
    assert is_supported_version("13.22")
    assert not is_supported_version("17")
    assert not is_supported_version("")


def test_check_platform_rejects_other_os(monkeypatch):
    monkeypatch.setattr("platform.system", lambda: "Darwin")
    monkeypatch.setattr("platform.machine", lambda: "arm64")
    with pytest.raises(UnsupportedPlatformError, match="Darwin/arm64"):
        check_platform()


def test_check_platform_accepts_linux_amd64(monkeypatch):
    monkeypatch.setattr("platform.system", lambda: "Linux")
    monkeypatch.setattr("platform.machine", lambda: "x86_64")
    assert check_platform() is None


def test_start_pg_unsupported_version(monkeypatch):
    monkeypatch.setattr("platform.system", lambda: "Linux")
    monkeypatch.setattr("platform.machine", lambda: "x86_64")
    with pytest.raises(UnsupportedVersionError):
        start_pg("9.6")


def test_start_pg_unsupported_platform(monkeypatch):
    monkeypatch.setattr("platform.system", lambda: "Windows")
    with pytest.raises(UnsupportedPlatformError):
        start_pg("17.6")


def test_cache_root_honours_xdg(monkeypatch, tmp_path):
    monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path))
    assert cache_root() == tmp_path / "pgxporter" / "postgres"


def test_cache_root_falls_back_to_home(monkeypatch, tmp_path):
    monkeypatch.delenv("XDG_CACHE_HOME", raising=False)
    monkeypatch.setenv("HOME", str(tmp_path))
    assert cache_root() == Path.home() / ".cache" / "pgxporter" / "postgres"


def test_ensure_binaries_uses_cache(monkeypatch, tmp_path):
    monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path))
    bin_dir = tmp_path / "pgxporter" / "postgres" / "17.6" / "bin"
    bin_dir.mkdir(parents=True)
    (bin_dir / "postgres").write_bytes(b"")
    assert ensure_binaries("17.6") == bin_dir


def test_extract_tarball(tmp_path):
    dest = tmp_path / "out"
    dest.mkdir()
    extract_tarball(io.BytesIO(_make_tarball()), dest)

    binary = dest / "bin" / "postgres"
    assert binary.read_bytes() == b"#!/bin/sh\nexit 0\n"
    assert binary.stat().st_mode & 0o100
    assert os.readlink(dest / "lib" / "libpq.so.5") == "libpq.so.5.17"
    assert not (tmp_path / "escape.txt").exists()


def test_extract_tarball_rejects_garbage(tmp_path):
    with pytest.raises(HarnessError):
        extract_tarball(io.BytesIO(b"not a tarball"), tmp_path)


def test_extract_tarball_rejects_plain_gzip_garbage(tmp_path):
    with pytest.raises(HarnessError):
        extract_tarball(io.BytesIO(gzip.compress(b"x" * 10)), tmp_path)


def test_download_and_extract(http_server, tmp_path):
    base, routes = http_server
    routes["/pg.tar.gz"] = (200, _make_tarball())
    download_and_extract(base + "/pg.tar.gz", tmp_path)
    assert (tmp_path / "bin" / "postgres").is_file()


def test_download_and_extract_bad_status(http_server, tmp_path):
    base, _ = http_server
    with pytest.raises(HarnessError, match="unexpected status 404"):
        download_and_extract(base + "/missing.tar.gz", tmp_path)


def test_pg_env_prepends_lib_dir(monkeypatch, tmp_path):
    monkeypatch.setenv("LD_LIBRARY_PATH", "/opt/other")
    env = pg_env(tmp_path / "bin")
    assert env["LD_LIBRARY_PATH"] == f"{tmp_path / 'lib'}{os.pathsep}/opt/other"


def test_pg_env_without_existing_path(monkeypatch, tmp_path):
    monkeypatch.delenv("LD_LIBRARY_PATH", raising=False)
    env = pg_env(tmp_path / "bin")
    assert env["LD_LIBRARY_PATH"] == f"{tmp_path / 'lib'}{os.pathsep}"
    assert env.get("PATH") == os.environ.get("PATH")


def test_pick_port_is_bindable():
    import socket

    port = pick_port()
    assert 0 < port < 65536
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", port))
        assert sock.getsockname()[1] == port


def test_init_db_missing_binary(tmp_path):
    with pytest.raises(HarnessError, match="initdb"):
        init_db(tmp_path / "bin", tmp_path / "data")


def test_init_db_reports_output(tmp_path):
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    _script(bin_dir / "initdb", "print('boom')\nraise SystemExit(1)\n")
    with pytest.raises(HarnessError, match="boom"):
        init_db(bin_dir, tmp_path / "data")


def test_init_db_arguments(tmp_path):
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    record = tmp_path / "args.txt"
    _script(
        bin_dir / "initdb",
        f"import sys\nopen({str(record)!r}, 'w').write('\\n'.join(sys.argv[1:]))\n",
    )
    data_dir = tmp_path / "data"
    init_db(bin_dir, data_dir)
    args = record.read_text().splitlines()
    assert args[0] == f"--pgdata={data_dir}"
    assert "--auth=trust" in args
    assert "--no-sync" in args


def test_start_postgres_arguments(tmp_path):
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    record = tmp_path / "args.txt"
    _script(
        bin_dir / "postgres",
        f"import sys\nopen({str(record)!r}, 'w').write('\\n'.join(sys.argv[1:]))\n",
    )
    process = start_postgres(bin_dir, tmp_path / "data", 5999)
    assert process.wait(timeout=10) == 0
    args = record.read_text().splitlines()
    assert args[:6] == ["-D", str(tmp_path / "data"), "-p", "5999", "-h", "127.0.0.1"]
    assert "fsync=off" in args


def test_start_postgres_missing_binary(tmp_path):
    with pytest.raises(HarnessError, match="postgres start"):
        start_postgres(tmp_path, tmp_path / "data", 5999)


def test_wait_ready_times_out(tmp_path):
    with pytest.raises(HarnessError, match="deadline"):
        wait_ready(tmp_path / "bin", 5999, timeout=0.3)


def test_wait_ready_succeeds(tmp_path):
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    record = tmp_path / "args.txt"
    _script(
        bin_dir / "pg_isready",
        f"import sys\nopen({str(record)!r}, 'w').write(' '.join(sys.argv[1:]))\n",
    )
    assert wait_ready(bin_dir, 5999, timeout=10) is None
    assert record.read_text() == "-h 127.0.0.1 -p 5999 -U postgres"


def test_pg_stop_removes_data_dir(tmp_path):
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    (data_dir / "PG_VERSION").write_text("17")
    server = PG(dsn="", host="127.0.0.1", port=1, data_dir=str(data_dir), version="17.6")
    server.stop()
    assert not data_dir.exists()
    assert server.data_dir == ""
    server.stop()
    assert server.data_dir == ""


def test_pg_context_manager_stops_process(tmp_path):
    process = subprocess.Popen(
        [sys.executable, "-c", "import time; time.sleep(60)"]
    )
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    with PG(
        dsn="", host="127.0.0.1", port=1, data_dir=str(data_dir),
        version="17.6", _process=process,
    ) as server:
        assert server.version == "17.6"
    assert process.returncode is not None
    assert server._process is None
    assert not data_dir.exists()


def test_every_listed_version_is_supported():
    assert "17.6" in pg.SUPPORTED_VERSIONS
    assert all(is_supported_version(version) for version in pg.SUPPORTED_VERSIONS)