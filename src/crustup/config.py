from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from crustup.errors import ConfigError

Json = Dict[str, Any]

DEFAULT_CHAIN_ENDPOINT = "wss://rpc.crust.network"
DEFAULT_IPFS_API_URL = "https://gw.smallwolf.me"

# 100 mCRU, expressed in pCRU (1 CRU = 10^12 pCRU).
DEFAULT_PREPAID_AMOUNT = 100_000_000_000


@dataclass(frozen=True)
class PipelineConfig:
    source_path: str
    seed: str = ""
    chunk_size_bytes: int = 500_000_000
    wait_for_replica: bool = False
    wait_for_prepaid: bool = True
    prepaid_amount: int = DEFAULT_PREPAID_AMOUNT
    poll_interval_ms: int = 1500

    chain_endpoint: str = DEFAULT_CHAIN_ENDPOINT
    ready_timeout_s: float = 60.0

    # IPFS HTTP API. ipfs_auth signs requests for Crust web3 gateways;
    # turn it off when talking to a local Kubo node.
    ipfs_api_url: str = DEFAULT_IPFS_API_URL
    ipfs_auth: bool = True
    ipfs_timeout_s: float = 600.0

    def validate(self) -> "PipelineConfig":
        if not str(self.source_path or "").strip():
            raise ConfigError("bad_config", "source_path_required")
        if int(self.chunk_size_bytes) <= 0:
            raise ConfigError("bad_config", "chunk_size_bytes_must_be_positive", self.chunk_size_bytes)
        if int(self.poll_interval_ms) < 0:
            raise ConfigError("bad_config", "poll_interval_ms_negative", self.poll_interval_ms)
        if int(self.prepaid_amount) < 0:
            raise ConfigError("bad_config", "prepaid_amount_negative", self.prepaid_amount)
        if not str(self.ipfs_api_url or "").strip():
            raise ConfigError("bad_config", "ipfs_api_url_required")
        return self

    def redacted(self) -> Json:
        """Loggable view of the config (seed masked)."""
        out = dataclasses.asdict(self)
        out["seed"] = "***" if self.seed else ""
        return out


_TRUTHY = {"1", "true", "yes", "y", "on"}
_FALSY = {"0", "false", "no", "n", "off"}


def _parse_bool(name: str, raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    s = str(raw).strip().lower()
    if s in _TRUTHY:
        return True
    if s in _FALSY:
        return False
    raise ConfigError("bad_config", f"{name}_not_bool", raw)


def _parse_int(name: str, raw: Any) -> int:
    if isinstance(raw, bool):
        raise ConfigError("bad_config", f"{name}_not_int", raw)
    try:
        return int(str(raw).strip().replace("_", ""))
    except ValueError as e:
        raise ConfigError("bad_config", f"{name}_not_int", raw) from e


def _parse_float(name: str, raw: Any) -> float:
    try:
        return float(str(raw).strip())
    except ValueError as e:
        raise ConfigError("bad_config", f"{name}_not_float", raw) from e


_FIELDS = {f.name: f for f in dataclasses.fields(PipelineConfig)}

_ENV_VARS = {
    "seed": "CRUSTUP_SEED",
    "chunk_size_bytes": "CRUSTUP_CHUNK_SIZE_BYTES",
    "wait_for_replica": "CRUSTUP_WAIT_REPLICA",
    "wait_for_prepaid": "CRUSTUP_WAIT_PREPAID",
    "prepaid_amount": "CRUSTUP_PREPAID_AMOUNT",
    "poll_interval_ms": "CRUSTUP_POLL_INTERVAL_MS",
    "chain_endpoint": "CRUSTUP_CHAIN_ENDPOINT",
    "ready_timeout_s": "CRUSTUP_READY_TIMEOUT_S",
    "ipfs_api_url": "CRUSTUP_IPFS_API_URL",
    "ipfs_auth": "CRUSTUP_IPFS_AUTH",
    "ipfs_timeout_s": "CRUSTUP_IPFS_TIMEOUT_S",
}


def _coerce(name: str, raw: Any) -> Any:
    if name not in _FIELDS:
        raise ConfigError("bad_config", "unknown_key", name)
    default = _FIELDS[name].default
    if isinstance(default, bool):
        return _parse_bool(name, raw)
    if isinstance(default, int):
        return _parse_int(name, raw)
    if isinstance(default, float):
        return _parse_float(name, raw)
    return str(raw).strip()


def values_from_env(environ: Optional[Mapping[str, str]] = None) -> Json:
    env = os.environ if environ is None else environ
    out: Json = {}
    for name, var in _ENV_VARS.items():
        raw = env.get(var)
        if raw is None or not str(raw).strip():
            continue
        out[name] = _coerce(name, raw)
    return out


def values_from_yaml(path: str) -> Json:
    """Read a flat YAML mapping whose keys are PipelineConfig field names."""
    p = Path(path).expanduser()
    try:
        obj = yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError("bad_config", "invalid_yaml", str(p)) from e
    except OSError as e:
        raise ConfigError("bad_config", "config_unreadable", str(p)) from e

    if obj is None:
        return {}
    if not isinstance(obj, dict):
        raise ConfigError("bad_config", "config_not_mapping", str(p))
    return {str(k): _coerce(str(k), v) for k, v in obj.items()}


def load_pipeline_config(
    source_path: str,
    *,
    config_file: Optional[str] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> PipelineConfig:
    """Build the immutable run config.

    Precedence, lowest first: defaults, environment, YAML file, overrides.
    Overrides with value None are ignored (unset CLI flags).
    """
    values: Json = {}
    values.update(values_from_env(environ))
    if config_file:
        values.update(values_from_yaml(config_file))
    for k, v in (overrides or {}).items():
        if v is None:
            continue
        values[k] = _coerce(k, v)

    values["source_path"] = str(source_path)
    return PipelineConfig(**values).validate()
