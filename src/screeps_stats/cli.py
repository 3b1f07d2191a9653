"""Command line interface for the Screeps stats agent."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple

import requests

from .api_client import ScreepsAPIClient, ScreepsAPIError, server_url
from .config import ConfigError, find_config, load_agent_config
from .ingest import StatsPoller
from .parquet_store import ParquetWarehouse
from .warehouse import WarehouseClient
from .writer import IngestWriter, WriterSettings


LOGGER_NAME = "screeps_stats"
LOG_FORMAT_INGEST = "%(asctime)s: %(message)s"

logger = logging.getLogger(LOGGER_NAME)
logger.setLevel(logging.DEBUG)
ingest_logger = logging.getLogger(f"{LOGGER_NAME}.agent")

ingest_log_formatter = logging.Formatter(LOG_FORMAT_INGEST)

default_log_handler = logging.StreamHandler()
default_log_handler.setLevel(logging.INFO)
default_log_handler.setFormatter(ingest_log_formatter)

logger.addHandler(default_log_handler)


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = _build_parser()
    return parser.parse_args(argv)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Poll Screeps stats and write them into a data warehouse.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="TOML configuration file (default: searched in standard locations)",
    )
    parser.add_argument("-u", "--username", help="Private server username")
    parser.add_argument("-p", "--password", help="Private server password")
    parser.add_argument("-t", "--token", help="Screeps auth token")
    parser.add_argument(
        "--shard", help="Shard to poll (comma separated for multiple)"
    )
    source = parser.add_mutually_exclusive_group()
    source.add_argument(
        "-s", "--segment", type=int, help="Read stats from this memory segment"
    )
    source.add_argument(
        "-m",
        "--memory",
        action="store_true",
        help="Read stats from Memory.stats (default)",
    )
    parser.add_argument("--host", help="Private server host and port (ex: host:port)")
    parser.add_argument(
        "--https", action="store_true", help="Use HTTPS for the private server"
    )
    parser.add_argument(
        "--interval", type=float, help="Seconds between polls (default: 60)"
    )
    parser.add_argument(
        "--once", action="store_true", help="Poll every shard once and exit"
    )
    parser.add_argument(
        "--backend",
        choices=["bigquery", "parquet"],
        help="Warehouse backend (default: bigquery)",
    )
    parser.add_argument("--dataset", help="BigQuery dataset to write into")
    parser.add_argument("--project", help="Google Cloud project of the dataset")
    parser.add_argument(
        "--parquet-dir",
        type=Path,
        help="Directory for the local Parquet warehouse",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose")
    return parser


def _default_config() -> Dict[str, Any]:
    return {
        "raw": {},
        "interval": 60.0,
        "screeps": {
            "token": None,
            "username": None,
            "password": None,
            "shard": ["shard0"],
            "segment": None,
            "connect": {"host": None, "protocol": "http"},
        },
        "warehouse": {
            "backend": "bigquery",
            "dataset": None,
            "project": None,
            "parquet_dir": None,
            "request_timeout": 30.0,
        },
    }


def _load_config(args: argparse.Namespace) -> Tuple[Dict[str, Any], Optional[int]]:
    path = args.config or find_config()
    if path is None:
        return _default_config(), None
    try:
        config = load_agent_config(path)
        logger.info("Load config from '%s'", path)
        return config, None
    except ConfigError as exc:
        logger.error("%s", exc)
        return {}, 2


def _apply_overrides(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    screeps = config["screeps"]
    connect = screeps["connect"]
    warehouse = config["warehouse"]
    if args.username:
        screeps["username"] = args.username
    if args.password:
        screeps["password"] = args.password
    if args.token:
        screeps["token"] = args.token
    if args.shard:
        screeps["shard"] = [s.strip() for s in args.shard.split(",") if s.strip()]
    if args.segment is not None:
        screeps["segment"] = args.segment
    if args.memory:
        screeps["segment"] = None
    if args.host:
        connect["host"] = args.host
    if args.https:
        connect["protocol"] = "https"
    if args.interval is not None:
        config["interval"] = args.interval
    if args.backend:
        warehouse["backend"] = args.backend
    if args.dataset:
        warehouse["dataset"] = args.dataset
    if args.project:
        warehouse["project"] = args.project
    if args.parquet_dir is not None:
        warehouse["parquet_dir"] = str(args.parquet_dir)


def _build_client(screeps: Dict[str, Any]) -> Tuple[Optional[ScreepsAPIClient], int]:
    host = screeps["connect"].get("host")
    username = screeps.get("username")
    if not host and username and not screeps.get("token"):
        logger.error(
            "Use auth tokens instead of a username on the official server. "
            "Add `token = \"yourToken\"` to the [screeps] table of your config."
        )
        return None, 2

    client = ScreepsAPIClient(
        server_url(host, screeps["connect"].get("protocol", "http")),
        token=screeps.get("token"),
    )
    if host and username:
        try:
            client.auth(username, screeps.get("password") or "")
        except (ScreepsAPIError, requests.RequestException) as exc:
            logger.error(
                "Authentication failed for user %s on %s: %s",
                username,
                client.base_url,
                exc,
            )
            client.close()
            return None, 2
    elif not client.token:
        logger.error("No Screeps credentials configured (token or username/password).")
        client.close()
        return None, 2
    return client, 0


def _build_warehouse(warehouse: Dict[str, Any]) -> Tuple[Optional[WarehouseClient], int]:
    if warehouse.get("backend") == "parquet":
        parquet_dir = warehouse.get("parquet_dir")
        if not parquet_dir:
            logger.error("The parquet backend requires --parquet-dir or warehouse.parquet_dir.")
            return None, 2
        return ParquetWarehouse(Path(parquet_dir)), 0

    dataset = warehouse.get("dataset")
    if not dataset:
        logger.error("The bigquery backend requires --dataset or warehouse.dataset.")
        return None, 2
    from .bigquery import BigQueryWarehouse

    return (
        BigQueryWarehouse(
            dataset,
            project=warehouse.get("project"),
            timeout=warehouse.get("request_timeout", 30.0),
        ),
        0,
    )


def run(argv: Optional[Iterable[str]] = None) -> int:
    args = parse_args(argv)
    if args.verbose:
        default_log_handler.setLevel(logging.DEBUG)

    config, config_error = _load_config(args)
    if config_error is not None:
        return config_error
    _apply_overrides(args, config)

    try:
        settings = WriterSettings.from_mapping(config["warehouse"])
    except ConfigError as exc:
        logger.error("%s", exc)
        return 2

    client, code = _build_client(config["screeps"])
    if client is None:
        return code
    warehouse, code = _build_warehouse(config["warehouse"])
    if warehouse is None:
        client.close()
        return code

    def report(message: str) -> None:
        ingest_logger.info(message)

    writer = IngestWriter(warehouse, settings)
    poller = StatsPoller(
        client,
        writer,
        shards=config["screeps"]["shard"],
        segment=config["screeps"]["segment"],
        interval=config["interval"],
        progress_callback=report,
    )
    try:
        if args.once:
            return 0 if poller.run_once() else 1
        poller.run()
    except KeyboardInterrupt:
        logger.info("Interrupted, %d rows left buffered", writer.buffers.total_rows())
    finally:
        warehouse.close()
        client.close()
    return 0


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":
    main()
