"""Disposable Postgres servers for integration tests.

Pre-built Linux/amd64 binaries are downloaded once, cached under
``$XDG_CACHE_HOME/pgxporter/postgres`` (or ``~/.cache/pgxporter/postgres``),
and a ``postgres`` process is booted on an ephemeral port.
"""

from __future__ import annotations

import contextlib
import os
import platform
import shutil
import signal
import socket
import subprocess
import tarfile
import tempfile
import time
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO

BINARY_RELEASE_TAG = "v0.0.5"

SUPPORTED_VERSIONS: tuple[str, ...] = (
    "13.22",
    "14.19",
    "15.14",
    "16.10",
    "17.6",
    "18.0",
)

_DOWNLOAD_URL = (
    "https://github.com/becomeliminal/postgres/releases/download/"
    "{tag}/psql-{version}-linux_x86_64.tar.gz"
)
_DOWNLOAD_TIMEOUT = 120.0
_POLL_INTERVAL = 0.1


class HarnessError(Exception):
    """Setting up or running a test server failed."""


class UnsupportedPlatformError(HarnessError):
    """The pre-built binaries do not run on this platform."""


class UnsupportedVersionError(HarnessError):
    """The requested Postgres version has no pre-built binaries."""


@dataclass
class PG:
    """A running, disposable Postgres server."""

    dsn: str
    host: str
    port: int
    data_dir: str
    version: str
    _process: subprocess.Popen | None = field(default=None, repr=False)

    def stop(self) -> None:
        """Stop the server and remove its data directory. Safe to call twice."""
        if self._process is not None:
            with contextlib.suppress(OSError, ValueError):
                self._process.send_signal(signal.SIGINT)
            with contextlib.suppress(OSError):
                self._process.wait()
            self._process = None
        if self.data_dir:
            shutil.rmtree(self.data_dir, ignore_errors=True)
            self.data_dir = ""

    def __enter__(self) -> PG:
        return self

    def __exit__(self, *args) -> None:
        self.stop()


def is_supported_version(version: str) -> bool:
    """Return whether binaries exist for ``version``."""
    return version in SUPPORTED_VERSIONS


def check_platform() -> None:
    """Raise UnsupportedPlatformError unless running on Linux/amd64."""
    system = platform.system()
    machine = platform.machine()
    if system != "Linux" or machine.lower() not in ("x86_64", "amd64"):
        raise UnsupportedPlatformError(
            f"pre-built binaries are Linux/amd64 only (have {system}/{machine})"
        )


def cache_root() -> Path:
    """Directory that extracted Postgres binaries are cached under."""
    xdg = os.environ.get("XDG_CACHE_HOME", "")
    if xdg:
        return Path(xdg) / "pgxporter" / "postgres"
    try:
        home = Path.home()
    except RuntimeError as exc:
        raise HarnessError(f"cache_root: {exc}") from exc
    return home / ".cache" / "pgxporter" / "postgres"


def ensure_binaries(version: str) -> Path:
    """Download and extract binaries for ``version`` if needed; return the bin directory."""
    extract_dir = cache_root() / version
    bin_dir = extract_dir / "bin"

    if (bin_dir / "postgres").is_file():
        return bin_dir

    try:
        extract_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise HarnessError(f"ensure_binaries: mkdir: {exc}") from exc

    url = _DOWNLOAD_URL.format(tag=BINARY_RELEASE_TAG, version=version)
    try:
        download_and_extract(url, extract_dir)
    except HarnessError as exc:
        # Remove a partial extraction so a retry can succeed.
        shutil.rmtree(extract_dir, ignore_errors=True)
        raise HarnessError(f"ensure_binaries: {exc}") from exc

    if not (bin_dir / "postgres").exists():
        raise HarnessError(
            f"ensure_binaries: postgres binary not found after extract at {bin_dir}"
        )
    return bin_dir


def download_and_extract(url: str, dest_root: str | os.PathLike) -> None:
    """Fetch a gzipped tarball from ``url`` and unpack it under ``dest_root``."""
    try:
        response = urllib.request.urlopen(url, timeout=_DOWNLOAD_TIMEOUT)
    except urllib.error.HTTPError as exc:
        raise HarnessError(
            f"download: unexpected status {exc.code} from {url}"
        ) from exc
    except (urllib.error.URLError, OSError) as exc:
        raise HarnessError(f"download: {exc}") from exc

    with response:
        if response.status != 200:
            raise HarnessError(
                f"download: unexpected status {response.status} from {url}"
            )
        extract_tarball(response, dest_root)


def extract_tarball(fileobj: BinaryIO, dest_root: str | os.PathLike) -> None:
    """Unpack a gzipped tar stream under ``dest_root``.

    Directories, regular files and symlinks are extracted; entries whose
    name contains ``..`` are skipped, as are other entry types.
    """
    root = Path(dest_root)
    try:
        with tarfile.open(fileobj=fileobj, mode="r|gz") as archive:
            for member in archive:
                name = member.name
                if not name or ".." in name:
                    continue
                target = root / name.lstrip("/")
                if member.isdir():
                    _mkdir(target, f"tar mkdir {target}")
                elif member.isreg():
                    _mkdir(target.parent, f"tar mkdir parent {target}")
                    source = archive.extractfile(member)
                    if source is None:
                        raise HarnessError(f"tar write {target}: no data")
                    _write_file(target, source, member.mode & 0o777)
                elif member.issym():
                    _mkdir(target.parent, f"tar mkdir parent (symlink) {target}")
                    with contextlib.suppress(OSError):
                        os.remove(target)
                    try:
                        os.symlink(member.linkname, target)
                    except OSError as exc:
                        raise HarnessError(
                            f"tar symlink {target} → {member.linkname}: {exc}"
                        ) from exc
    except (tarfile.TarError, EOFError) as exc:
        raise HarnessError(f"tar: {exc}") from exc
    except OSError as exc:
        raise HarnessError(f"download: gunzip: {exc}") from exc


def _mkdir(path: Path, context: str) -> None:
    try:
        path.mkdir(mode=0o755, parents=True, exist_ok=True)
    except OSError as exc:
        raise HarnessError(f"{context}: {exc}") from exc


def _write_file(target: Path, source: BinaryIO, mode: int) -> None:
    try:
        fd = os.open(target, os.O_CREAT | os.O_WRONLY | os.O_TRUNC, mode)
    except OSError as exc:
        raise HarnessError(f"tar create {target}: {exc}") from exc
    try:
        with os.fdopen(fd, "wb") as out:
            shutil.copyfileobj(source, out)
    except OSError as exc:
        raise HarnessError(f"tar write {target}: {exc}") from exc


def init_db(bin_dir: str | os.PathLike, data_dir: str | os.PathLike) -> None:
    """Run ``initdb`` with trust auth for a throwaway cluster."""
    command = [
        str(Path(bin_dir) / "initdb"),
        f"--pgdata={data_dir}",
        "--username=postgres",
        "--auth=trust",
        "--encoding=UTF8",
        "--no-sync",
    ]
    try:
        result = subprocess.run(
            command,
            env=pg_env(bin_dir),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            check=False,
        )
    except OSError as exc:
        raise HarnessError(f"initdb: {exc}") from exc
    if result.returncode != 0:
        output = result.stdout.decode(errors="replace")
        raise HarnessError(
            f"initdb: exit status {result.returncode}\n{output}"
        )


def pick_port() -> int:
    """Return a TCP port on 127.0.0.1 that was free a moment ago."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", 0))
            return sock.getsockname()[1]
    except OSError as exc:
        raise HarnessError(f"picking port: {exc}") from exc


def start_postgres(
    bin_dir: str | os.PathLike, data_dir: str | os.PathLike, port: int
) -> subprocess.Popen:
    """Start ``postgres`` on 127.0.0.1 with settings tuned for disposable data."""
    command = [
        str(Path(bin_dir) / "postgres"),
        "-D", str(data_dir),
        "-p", str(port),
        "-h", "127.0.0.1",
        "-c", "log_min_messages=warning",
        "-c", "logging_collector=off",
        "-c", "fsync=off",
        "-c", "synchronous_commit=off",
        "-c", "full_page_writes=off",
    ]
    try:
        return subprocess.Popen(command, env=pg_env(bin_dir))
    except OSError as exc:
        raise HarnessError(f"postgres start: {exc}") from exc


def wait_ready(
    bin_dir: str | os.PathLike, port: int, timeout: float = 30.0
) -> None:
    """Poll ``pg_isready`` until the server accepts connections or time runs out."""
    deadline = time.monotonic() + timeout
    isready = str(Path(bin_dir) / "pg_isready")
    command = [isready, "-h", "127.0.0.1", "-p", str(port), "-U", "postgres"]
    env = pg_env(bin_dir)
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise HarnessError("wait_ready: deadline exceeded")
        try:
            result = subprocess.run(
                command,
                env=env,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=remaining,
                check=False,
            )
            if result.returncode == 0:
                return
        except (OSError, subprocess.TimeoutExpired):
            pass
        if deadline - time.monotonic() <= 0:
            raise HarnessError("wait_ready: deadline exceeded")
        time.sleep(min(_POLL_INTERVAL, max(deadline - time.monotonic(), 0)))


def pg_env(bin_dir: str | os.PathLike) -> dict[str, str]:
    """Environment that lets the binaries find their bundled shared libraries."""
    lib_dir = Path(bin_dir).parent / "lib"
    env = dict(os.environ)
    env["LD_LIBRARY_PATH"] = (
        f"{lib_dir}{os.pathsep}{os.environ.get('LD_LIBRARY_PATH', '')}"
    )
    return env


def start_pg(version: str, data_dir: str | os.PathLike | None = None) -> PG:
    """Boot a Postgres server of ``version`` and wait until it is ready.

    When ``data_dir`` is omitted a temporary directory is used. The data
    directory is removed when the server is stopped.
    """
    check_platform()
    if not is_supported_version(version):
        raise UnsupportedVersionError(
            f"version {version!r} not in SUPPORTED_VERSIONS {list(SUPPORTED_VERSIONS)}"
        )

    bin_dir = ensure_binaries(version)

    created = data_dir is None
    data_path = (
        Path(tempfile.mkdtemp(prefix="pgharness-")) if created else Path(data_dir)
    )
    try:
        init_db(bin_dir, data_path)
        port = pick_port()
        process = start_postgres(bin_dir, data_path, port)
    except HarnessError:
        if created:
            shutil.rmtree(data_path, ignore_errors=True)
        raise

    pg = PG(
        dsn=f"postgres://postgres@127.0.0.1:{port}/postgres?sslmode=disable",
        host="127.0.0.1",
        port=port,
        data_dir=str(data_path),
        version=version,
        _process=process,
    )
    try:
        wait_ready(bin_dir, port)
    except HarnessError as exc:
        pg.stop()
        raise HarnessError(f"waiting for ready: {exc}") from exc
    return pg