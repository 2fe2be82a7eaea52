"""Downloader and harness for the community postgres_exporter binary."""

from __future__ import annotations

import contextlib
import http.client
import os
import shutil
import signal
import subprocess
import time
import urllib.request
from dataclasses import dataclass, field
from pathlib import Path

from pgharness.pg import (
    HarnessError,
    cache_root,
    check_platform,
    download_and_extract,
    pick_port,
)

POSTGRES_EXPORTER_RELEASE_TAG = "v0.19.1"

_BINARY_NAME = "postgres_exporter"
_ASSET_URL = (
    "https://github.com/prometheus-community/postgres_exporter/releases/download/"
    "{version}/postgres_exporter-{stripped}.linux-amd64.tar.gz"
)
_STOP_GRACE = 3.0
_POLL_INTERVAL = 0.1


@dataclass
class PostgresExporter:
    """A running postgres_exporter subprocess."""

    url: str
    port: int
    _process: subprocess.Popen | None = field(default=None, repr=False)

    def stop(self) -> None:
        """Interrupt the exporter, killing it if it lingers. Safe to call twice."""
        process = self._process
        if process is None:
            return
        with contextlib.suppress(OSError, ValueError):
            process.send_signal(signal.SIGINT)
        try:
            process.wait(timeout=_STOP_GRACE)
        except subprocess.TimeoutExpired:
            with contextlib.suppress(OSError):
                process.kill()
            process.wait()
        self._process = None

    def __enter__(self) -> PostgresExporter:
        return self

    def __exit__(self, *args) -> None:
        self.stop()


def postgres_exporter_cache_root() -> Path:
    """Cache directory for postgres_exporter, beside the Postgres cache."""
    return cache_root().parent / "postgres-exporter"


def release_asset_url(version: str) -> str:
    """Download URL of the Linux/amd64 tarball for release ``version``."""
    stripped = version[1:] if version.startswith("v") else version
    return _ASSET_URL.format(version=version, stripped=stripped)


def ensure_postgres_exporter_binary() -> Path:
    """Download and extract postgres_exporter if needed; return the binary path."""
    version = POSTGRES_EXPORTER_RELEASE_TAG
    extract_dir = postgres_exporter_cache_root() / version

    cached = find_binary(extract_dir, _BINARY_NAME)
    if cached is not None:
        return cached

    try:
        extract_dir.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise HarnessError(f"postgres_exporter cache: mkdir: {exc}") from exc

    try:
        download_and_extract(release_asset_url(version), extract_dir)
    except HarnessError as exc:
        shutil.rmtree(extract_dir, ignore_errors=True)
        raise HarnessError(f"postgres_exporter download: {exc}") from exc

    found = find_binary(extract_dir, _BINARY_NAME)
    if found is None:
        raise HarnessError(
            f"postgres_exporter binary not found under {extract_dir} after extract"
        )
    return found


def find_binary(root: str | os.PathLike, name: str) -> Path | None:
    """Depth-first search of ``root`` in name order for a non-directory ``name``."""
    return next(_walk_matches(Path(root), name), None)


def _walk_matches(directory: Path, name: str):
    try:
        entries = sorted(os.scandir(directory), key=lambda entry: entry.name)
    except OSError:
        return
    for entry in entries:
        try:
            is_dir = entry.is_dir(follow_symlinks=False)
        except OSError:
            continue
        if is_dir:
            yield from _walk_matches(Path(entry.path), name)
        elif entry.name == name:
            yield Path(entry.path)


def wait_exporter_ready(url: str, timeout: float = 15.0) -> None:
    """Poll ``url/metrics`` until it answers 200 with a non-empty body."""
    deadline = time.monotonic() + timeout
    target = url + "/metrics"
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise HarnessError("wait_exporter_ready: deadline exceeded")
        try:
            with urllib.request.urlopen(target, timeout=min(2.0, remaining)) as resp:
                body = resp.read()
                if resp.status == 200 and body:
                    return
        except (OSError, http.client.HTTPException):
            pass
        if deadline - time.monotonic() <= 0:
            raise HarnessError("wait_exporter_ready: deadline exceeded")
        time.sleep(min(_POLL_INTERVAL, max(deadline - time.monotonic(), 0)))


def start_postgres_exporter(dsn: str) -> PostgresExporter:
    """Boot postgres_exporter against ``dsn`` on an ephemeral port.

    The DSN is passed through the environment so it stays out of the
    process list.
    """
    check_platform()
    binary = ensure_postgres_exporter_binary()
    port = pick_port()

    env = dict(os.environ)
    env["DATA_SOURCE_NAME"] = dsn
    command = [
        str(binary),
        f"--web.listen-address=127.0.0.1:{port}",
        "--no-auto-discover-databases",
        "--log.level=warn",
    ]
    try:
        process = subprocess.Popen(
            command,
            env=env,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
    except OSError as exc:
        raise HarnessError(f"starting postgres_exporter: {exc}") from exc

    exporter = PostgresExporter(
        url=f"http://127.0.0.1:{port}", port=port, _process=process
    )
    try:
        wait_exporter_ready(exporter.url)
    except HarnessError as exc:
        exporter.stop()
        raise HarnessError(f"waiting for /metrics: {exc}") from exc
    return exporter