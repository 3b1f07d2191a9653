from typing import Any, Dict, List, Optional

import pytest

from screeps_stats import cli as cli_mod
from screeps_stats.api_client import ScreepsAPIError
from screeps_stats.cli import run


class _RecorderClient:
    instances: List["_RecorderClient"] = []
    stats: Dict[str, Any] = {}
    auth_error: Optional[Exception] = None

    def __init__(
        self,
        base_url: str = "https://screeps.com",
        token=None,
        session=None,
        timeout: float = 10.0,
        *,
        min_interval: float = 1.0,
        max_retries: int = 3,
    ) -> None:
        self.base_url = base_url
        self.token = token
        self.calls: List[tuple] = []
        self.closed = False
        _RecorderClient.instances.append(self)

    def auth(self, username: str, password: str) -> str:
        self.calls.append(("auth", username, password))
        if self.auth_error is not None:
            raise self.auth_error
        self.token = "signed-in"
        return self.token

    def get_memory(self, path: str = "stats", shard: str = "shard0") -> Any:
        self.calls.append(("memory", path, shard))
        return self.stats.get(shard)

    def get_segment(self, segment: int, shard: str = "shard0") -> Any:
        self.calls.append(("segment", segment, shard))
        return self.stats.get(shard)

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def recorder(monkeypatch):
    _RecorderClient.instances = []
    _RecorderClient.stats = {}
    _RecorderClient.auth_error = None
    monkeypatch.setattr(cli_mod, "ScreepsAPIClient", _RecorderClient)
    monkeypatch.setattr(cli_mod, "find_config", lambda: None)
    return _RecorderClient


def _write_config(tmp_path, text: str):
    path = tmp_path / "agent.toml"
    path.write_text(text, encoding="utf-8")
    return path


def test_once_writes_memory_stats_to_parquet(recorder, tmp_path):
    pytest.importorskip("pyarrow")
    from screeps_stats.parquet_store import ParquetWarehouse

    recorder.stats = {
        "shard2": {
            "time": 1_700_000_000_000,
            "tables": {"rooms": [{"room": "W1N1", "energy": 300}]},
        }
    }
    wh_dir = tmp_path / "wh"
    config = _write_config(
        tmp_path,
        """
[screeps]
token = "abc"
shard = ["shard2"]

[warehouse]
backend = "parquet"
parquet_dir = "{wh_dir}"
rowsToBuffer = 0
""".format(wh_dir=str(wh_dir).replace("\\", "\\\\")),
    )

    assert run(["--config", str(config), "--once"]) == 0

    (client,) = recorder.instances
    assert client.base_url == "https://screeps.com"
    assert client.token == "abc"
    assert client.calls == [("memory", "stats", "shard2")]
    assert client.closed
    rows = ParquetWarehouse(wh_dir).read_rows("rooms")
    assert [(row["room"], row["energy"]) for row in rows] == [("W1N1", 300.0)]


def test_private_server_signs_in_and_reads_segment(recorder, tmp_path):
    pytest.importorskip("pyarrow")
    recorder.stats = {"shard0": '{"time": 1700000000000, "tables": {}}'}

    code = run(
        [
            "-u",
            "bob",
            "-p",
            "secret",
            "--host",
            "localhost:21025",
            "-s",
            "4",
            "--backend",
            "parquet",
            "--parquet-dir",
            str(tmp_path / "wh"),
            "--once",
        ]
    )

    assert code == 0
    (client,) = recorder.instances
    assert client.base_url == "http://localhost:21025"
    assert client.calls == [("auth", "bob", "secret"), ("segment", 4, "shard0")]


def test_failed_cycle_exits_nonzero(recorder, tmp_path):
    pytest.importorskip("pyarrow")

    code = run(
        ["-t", "abc", "--backend", "parquet", "--parquet-dir", str(tmp_path), "--once"]
    )

    assert code == 1
    assert recorder.instances[0].closed


def test_username_on_official_server_is_rejected(recorder):
    assert run(["-u", "bob", "-p", "secret", "--once"]) == 2
    assert recorder.instances == []


def test_auth_failure_exits_with_usage_error(recorder, tmp_path):
    recorder.auth_error = ScreepsAPIError("Authentication failed")

    code = run(["-u", "bob", "-p", "bad", "--host", "localhost:21025", "--once"])

    assert code == 2
    assert recorder.instances[0].closed


def test_missing_credentials_exit(recorder):
    assert run(["--once"]) == 2


def test_bigquery_backend_requires_dataset(recorder):
    assert run(["-t", "abc", "--once"]) == 2
    assert recorder.instances[0].closed


def test_parquet_backend_requires_directory(recorder):
    assert run(["-t", "abc", "--backend", "parquet", "--once"]) == 2


def test_config_errors_exit_with_usage_error(recorder, tmp_path):
    config = _write_config(
        tmp_path,
        """
[screeps]
token = "abc"

[screeps.connect]
protocol = "gopher"
""",
    )

    assert run(["--config", str(config), "--once"]) == 2
    assert recorder.instances == []


def test_invalid_writer_settings_exit_with_usage_error(recorder, tmp_path):
    config = _write_config(
        tmp_path,
        """
[screeps]
token = "abc"

[warehouse]
rowsToBuffer = -1
""",
    )

    assert run(["--config", str(config), "--once"]) == 2


def test_segment_and_memory_are_exclusive(recorder):
    with pytest.raises(SystemExit):
        run(["-t", "abc", "-s", "1", "-m"])
