#!/usr/bin/env python3
"""
tracker_config.py — Settings and logging for the position tracker.

Resolution order per key: config.json > environment variables > defaults.
A .env file next to the process is loaded first (python-dotenv).

Environment variables:
  CBC_STORAGE           json | sqlite | memory (default: json)
  CBC_DATA_DIR          where the store lives (default: /data, else this dir)
  CBC_NAMESPACE         storage key namespace (default: cbc_positions)
  CBC_STORAGE_VERSION   storage schema version (default: 1.0)
  CBC_ASSET             CoinGecko coin id (default: ethereum)
  COINGECKO_URL         API base URL
  COINGECKO_API_KEY     optional demo/pro key
  CBC_REQUEST_TIMEOUT   seconds per price request (default: 15)
  CBC_HISTORICAL_AFTER  minutes before the historical endpoint is used (default: 60)
  PORT                  API port (default: 5000)
  LOG_LEVEL             INFO | DEBUG (default: INFO)
"""

import json
import logging
import os
import sys
import time
from pathlib import Path

from dotenv import load_dotenv

from position_engine import PositionEngine
from position_store import PositionStore, make_adapter
from price_oracle import PriceOracle

load_dotenv()

_DATA_DIR = "/data" if os.path.isdir("/data") else str(Path(__file__).parent)

CONFIG_SCHEMA = {
    "storage_backend":          {"default": "json",          "env": "CBC_STORAGE",          "type": str},
    "data_dir":                 {"default": _DATA_DIR,       "env": "CBC_DATA_DIR",         "type": str},
    "namespace":                {"default": "cbc_positions", "env": "CBC_NAMESPACE",        "type": str},
    "storage_version":          {"default": "1.0",           "env": "CBC_STORAGE_VERSION",  "type": str},
    "asset":                    {"default": "ethereum",      "env": "CBC_ASSET",            "type": str},
    "coingecko_url":            {"default": "https://api.coingecko.com/api/v3",
                                                             "env": "COINGECKO_URL",        "type": str},
    "coingecko_api_key":        {"default": "",              "env": "COINGECKO_API_KEY",    "type": str},
    "request_timeout":          {"default": 15.0,            "env": "CBC_REQUEST_TIMEOUT",  "type": float},
    "historical_after_minutes": {"default": 60,              "env": "CBC_HISTORICAL_AFTER", "type": int},
    "port":                     {"default": 5000,            "env": "PORT",                 "type": int},
    "log_level":                {"default": "INFO",          "env": "LOG_LEVEL",            "type": str},
}


def load_config(schema=CONFIG_SCHEMA, config_path=None, environ=None):
    """Resolve every schema key. A bad env value falls back to the default."""
    environ = os.environ if environ is None else environ
    if config_path is None:
        config_path = Path(__file__).parent / "config.json"
    config_path = Path(config_path)

    file_cfg = {}
    if config_path.exists():
        try:
            with open(config_path) as f:
                file_cfg = json.load(f)
        except (json.JSONDecodeError, IOError):
            pass
    if not isinstance(file_cfg, dict):
        file_cfg = {}

    result = {}
    for key, spec in schema.items():
        if key in file_cfg:
            result[key] = file_cfg[key]
        elif spec.get("env") and environ.get(spec["env"]):
            val = environ.get(spec["env"])
            type_fn = spec.get("type", str)
            try:
                result[key] = (
                    val.lower() in ("true", "1", "yes")
                    if type_fn is bool
                    else type_fn(val)
                )
            except (ValueError, TypeError):
                result[key] = spec.get("default")
        else:
            result[key] = spec.get("default")
    return result


LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%dT%H:%M:%SZ"


def log_formatter():
    """Formatter whose timestamps are UTC, matching the Z in LOG_DATEFMT."""
    formatter = logging.Formatter(LOG_FORMAT, LOG_DATEFMT)
    formatter.converter = time.gmtime
    return formatter


def setup_logging(level="INFO"):
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(log_formatter())
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        handlers=[handler],
    )


def build_engine(cfg=None):
    """Wire store, oracle and engine from settings."""
    cfg = cfg or load_config()
    adapter = make_adapter(cfg["storage_backend"], cfg["data_dir"], cfg["namespace"])
    store = PositionStore(adapter, namespace=cfg["namespace"], version=cfg["storage_version"])
    return PositionEngine(store, oracle=PriceOracle.from_config(cfg))
