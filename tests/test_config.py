from pathlib import Path

import pytest

from screeps_stats.config import (
    CONFIG_ENV,
    ConfigError,
    config_search_paths,
    find_config,
    load_agent_config,
)
from screeps_stats.writer import WriterSettings


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "screeps-stats.toml"
    path.write_text(text, encoding="utf-8")
    return path


def test_load_full_config(tmp_path):
    path = _write(
        tmp_path,
        """
interval = 30

[screeps]
username = "bob"
password = "secret"
shard = ["shard0", "shard2"]
segment = 5

[screeps.connect]
host = "localhost:21025"
protocol = "https"

[warehouse]
backend = "parquet"
parquet_dir = "/tmp/wh"
rowsToBuffer = 25
maxBufferTime = 2
clusterOnUnderscore = true
partionExpiryDays = 7
""",
    )

    config = load_agent_config(path)

    assert config["interval"] == 30.0
    screeps = config["screeps"]
    assert screeps["username"] == "bob"
    assert screeps["token"] is None
    assert screeps["shard"] == ["shard0", "shard2"]
    assert screeps["segment"] == 5
    assert screeps["connect"] == {"host": "localhost:21025", "protocol": "https"}
    warehouse = config["warehouse"]
    assert warehouse["backend"] == "parquet"
    assert warehouse["parquet_dir"] == "/tmp/wh"
    assert warehouse["request_timeout"] == 30.0

    settings = WriterSettings.from_mapping(warehouse)
    assert settings.rows_to_buffer == 25
    assert settings.max_buffer_minutes == 2.0
    assert settings.cluster_on_underscore is True
    assert settings.partition_expiry_days == 7


def test_defaults_and_comma_separated_shards(tmp_path):
    path = _write(
        tmp_path,
        """
[screeps]
token = "abc"
shard = "shard1, shard3"
""",
    )

    config = load_agent_config(path)

    assert config["interval"] == 60.0
    assert config["screeps"]["shard"] == ["shard1", "shard3"]
    assert config["screeps"]["connect"] == {"host": None, "protocol": "http"}
    assert config["warehouse"]["backend"] == "bigquery"
    assert config["warehouse"]["dataset"] is None


def test_shard_defaults_to_shard0(tmp_path):
    path = _write(tmp_path, '[screeps]\ntoken = "abc"\n')
    assert load_agent_config(path)["screeps"]["shard"] == ["shard0"]


@pytest.mark.parametrize(
    "text, message",
    [
        ('[warehouse]\ndataset = "x"\n', r"\[screeps\] table"),
        ('[screeps]\ntoken = "a"\n[screeps.connect]\nprotocol = "ftp"\n', "protocol"),
        ('[screeps]\ntoken = "a"\nsegment = "3"\n', "segment"),
        ('interval = 0\n[screeps]\ntoken = "a"\n', "interval"),
        ('[screeps]\ntoken = "a"\n[warehouse]\nbackend = "csv"\n', "backend"),
        ('[screeps]\ntoken = 5\n', "screeps.token"),
        ('[screeps]\ntoken = "a"\nshard = [1]\n', "screeps.shard"),
    ],
)
def test_invalid_config_raises(tmp_path, text, message):
    path = _write(tmp_path, text)
    with pytest.raises(ConfigError, match=message):
        load_agent_config(path)


def test_unparseable_and_missing_files(tmp_path):
    with pytest.raises(ConfigError, match="Failed to parse"):
        load_agent_config(_write(tmp_path, "[screeps\n"))
    with pytest.raises(ConfigError, match="Failed to read"):
        load_agent_config(tmp_path / "missing.toml")


def test_invalid_writer_settings_raise():
    with pytest.raises(ConfigError, match="rowsToBuffer"):
        WriterSettings.from_mapping({"rowsToBuffer": "many"})
    with pytest.raises(ConfigError, match="createMissingTables"):
        WriterSettings.from_mapping({"createMissingTables": 1})


def test_find_config_prefers_env_path(tmp_path, monkeypatch):
    explicit = tmp_path / "agent.toml"
    explicit.write_text('[screeps]\ntoken = "a"\n', encoding="utf-8")
    monkeypatch.setenv(CONFIG_ENV, str(explicit))
    monkeypatch.chdir(tmp_path)

    assert config_search_paths()[0] == explicit
    assert find_config() == explicit


def test_find_config_falls_back_to_working_directory(tmp_path, monkeypatch):
    monkeypatch.delenv(CONFIG_ENV, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.chdir(tmp_path)
    local = _write(tmp_path, '[screeps]\ntoken = "a"\n')

    assert find_config() == Path.cwd() / local.name
