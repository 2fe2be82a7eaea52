# pgharness

Throwaway PostgreSQL servers and `postgres_exporter` processes for
integration tests and benchmarks.

`pgharness` downloads pre-built Linux/amd64 binaries once, caches them under
`$XDG_CACHE_HOME/pgxporter` (or `~/.cache/pgxporter` when `XDG_CACHE_HOME`
is unset), and boots processes on ephemeral ports on `127.0.0.1`. No
container runtime is involved.

## Requirements

- Linux on x86-64. On any other platform `start_pg` and
  `start_postgres_exporter` raise `UnsupportedPlatformError`.
- Network access the first time a given version is fetched.
- No third-party Python packages.

## Installation

```
pip install pgharness
```

## Starting a PostgreSQL server

```python
from pgharness.pg import start_pg

with start_pg("17.6") as pg:
    print(pg.dsn)   # postgres://postgres@127.0.0.1:<port>/postgres?sslmode=disable
    print(pg.port)
```

`start_pg(version, data_dir=None)`:

1. checks the platform and the version,
2. fetches and extracts the binaries into the cache if they are not there yet,
3. runs `initdb` with trust authentication for the `postgres` superuser
   (UTF8 encoding, `--no-sync`),
4. starts `postgres` on a free port on `127.0.0.1` with `fsync`,
   `synchronous_commit` and `full_page_writes` turned off,
5. polls `pg_isready` for up to 30 seconds until the server accepts
   connections.

When `data_dir` is omitted a temporary directory is created. The returned
`PG` object has `dsn`, `host`, `port`, `data_dir` and `version`.

Leaving the `with` block, or calling `PG.stop()`, interrupts the server,
waits for it to exit and removes the data directory, whether or not you
supplied it. `stop()` is safe to call more than once.

Only the versions the binary release provides are accepted: 13.22, 14.19,
15.14, 16.10, 17.6 and 18.0 (`SUPPORTED_VERSIONS`). Use
`is_supported_version` to check; any other version raises
`UnsupportedVersionError`. Failures while downloading, initialising, starting
or waiting raise `HarnessError`, the base class of both errors above.

### In a pytest fixture

```python
import pytest

from pgharness.pg import UnsupportedPlatformError, start_pg


@pytest.fixture
def pg(tmp_path):
    try:
        server = start_pg("17.6", tmp_path / "data")
    except UnsupportedPlatformError as exc:
        pytest.skip(str(exc))
    with server:
        yield server


def test_listens_locally(pg):
    assert pg.host == "127.0.0.1"
```

## Starting postgres_exporter

For benchmarks that compare against the community Prometheus exporter,
`start_postgres_exporter(dsn)` downloads the pinned release
(`POSTGRES_EXPORTER_RELEASE_TAG`, currently `v0.19.1`), starts it with the
DSN in the `DATA_SOURCE_NAME` environment variable (never on the command
line), and waits up to 15 seconds until `/metrics` answers 200 with a
non-empty body.

```python
from pgharness.pg import start_pg
from pgharness.postgres_exporter import start_postgres_exporter

with start_pg("17.6") as pg:
    dsn = f"host=127.0.0.1 port={pg.port} user=postgres sslmode=disable"
    with start_postgres_exporter(dsn) as exporter:
        metrics_url = exporter.url + "/metrics"
```

The returned `PostgresExporter` has `url` and `port`. Its `stop()` sends an
interrupt and kills the process if it has not exited after three seconds;
it is safe to call more than once.

## Lower-level helpers

In `pgharness.pg`: `check_platform`, `cache_root`, `ensure_binaries`,
`download_and_extract`, `extract_tarball`, `init_db`, `pick_port`,
`start_postgres`, `wait_ready` and `pg_env` (which prepends the bundled
`lib/` directory to `LD_LIBRARY_PATH`).

In `pgharness.postgres_exporter`: `postgres_exporter_cache_root`,
`release_asset_url`, `ensure_postgres_exporter_binary`, `find_binary` and
`wait_exporter_ready`.

`extract_tarball` unpacks directories, regular files and symlinks from a
gzipped tar stream and skips entries whose names are empty or contain `..`,
so an archive cannot write outside its destination.

## What it does not do

- It has no command-line tool; everything is called from Python.
- It does not connect to the database or run SQL; use any PostgreSQL client
  with the DSN it gives you.
- It does not register cleanup with the test framework; stop the processes
  yourself, most simply with `with`.
- It starts no exporter other than the downloaded `postgres_exporter`.

## Running the tests

```
pip install -e ".[test]"
pytest
```