# FILE: cipherledger/config.py
from __future__ import annotations

import logging
import os
import threading
from typing import Any, Dict, FrozenSet, Optional

import yaml
from pydantic import BaseModel, ConfigDict

from .kv import canonical_kv_hash


_log = logging.getLogger(__name__)

_ENV_PREFIX = "CIPHERLEDGER_"


# ---------------------------------------------------------------------------
# Env helpers
# ---------------------------------------------------------------------------


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    v = raw.strip().lower()
    return v in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except Exception:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except Exception:
        return default


def _env_str(name: str, default: str) -> str:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip()


def _load_yaml_mapping(path: str) -> Dict[str, Any]:
    """
    Load a simple top-level mapping from YAML.

    Constraints:
      - Ignore if path is empty or missing.
      - Only accept dict at top-level.
      - Coerce non-scalar values via str() to avoid arbitrary structures.
    """
    if not path or not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            doc = yaml.safe_load(f)
    except Exception:
        _log.warning("failed to load YAML config from %s", path, exc_info=True)
        return {}
    if not isinstance(doc, dict):
        return {}
    out: Dict[str, Any] = {}
    for k, v in doc.items():
        if isinstance(v, (str, int, float, bool)) or v is None:
            out[str(k)] = v
        else:
            out[str(k)] = str(v)
    return out


# ---------------------------------------------------------------------------
# Settings model
# ---------------------------------------------------------------------------


class Settings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    # --- Core / identity --------------------------------------------------

    debug: bool = False
    version: str = "dev"
    app_name: str = "cipherledger"

    # Indicates how this config reached the process (defaults/yaml/env).
    config_origin: str = "defaults"

    # --- Backends ---------------------------------------------------------

    # "memory" wires the in-process ledger and local coprocessor,
    # "jsonrpc" wires the JSON-RPC ledger gateway and the HTTP relayer.
    ledger_backend: str = "memory"
    ledger_rpc_url: str = "http://127.0.0.1:8545"
    relayer_url: str = "http://127.0.0.1:8600"
    contract_address: str = "0x0000000000000000000000000000000000000c1e"
    # Signing account the ledger gateway submits for; the input proof binds to it.
    account: str = "0x00000000000000000000000000000000000a11ce"
    chain_id: int = 11155111

    # --- Timeouts ---------------------------------------------------------

    # Upper bound on any single remote call (encrypt, read, write, decrypt).
    remote_call_timeout_s: float = 60.0
    # httpx per-request timeout for the HTTP backends.
    http_timeout_s: float = 30.0
    # Upper bound on waiting for one transaction to confirm.
    confirmation_timeout_s: float = 180.0
    confirmation_poll_interval_s: float = 1.0

    # --- Status presentation contract -------------------------------------

    status_success_clear_s: float = 2.0
    status_error_clear_s: float = 3.0

    # --- Reconciliation ---------------------------------------------------

    # Delay before the post-write refresh task runs.
    post_write_refresh_delay_s: float = 2.0
    # Periodic refresh; 0 disables the background loop.
    refresh_interval_s: float = 0.0
    # Window for the "active" aggregate (seconds).
    active_window_s: float = 86_400.0
    # Records read concurrently during a refresh; keep at or below the
    # HTTP connection pool size so queued reads do not eat call timeouts.
    refresh_concurrency: int = 8

    # --- Record shape -----------------------------------------------------

    plain_tag_modulus: int = 1000
    record_id_prefix: str = "record-"
    record_category: str = "encrypted-record"

    # --- Observability ----------------------------------------------------

    log_level: str = "INFO"
    metrics_enabled: bool = True

    # Fields that refresh() keeps from the running snapshot.
    immutable_fields: FrozenSet[str] = frozenset(
        {
            "ledger_backend",
            "contract_address",
            "chain_id",
        }
    )

    def config_hash(self) -> str:
        """
        Stable hash of the current settings, safe to put in logs.
        """
        payload = self.model_dump(mode="json")
        payload["immutable_fields"] = sorted(payload.get("immutable_fields") or [])
        return canonical_kv_hash(
            payload,
            ctx="cipherledger:settings",
            label="settings",
        )


# ---------------------------------------------------------------------------
# Loading / merging
# ---------------------------------------------------------------------------


def load_settings() -> Settings:
    """
    Load Settings from defaults, optional YAML, and environment variables.

    Priority:
      1. Settings defaults (in-code).
      2. YAML file pointed to by CIPHERLEDGER_CONFIG_PATH.
      3. Environment variables (CIPHERLEDGER_*), with bounds checks; an
         out-of-range or unparsable value keeps the previous layer's value.
    """
    merged: Dict[str, Any] = Settings().model_dump()
    origin = "defaults"

    # 1) YAML overlay
    yaml_path = os.environ.get(_ENV_PREFIX + "CONFIG_PATH", "").strip()
    yaml_doc = _load_yaml_mapping(yaml_path)
    if yaml_doc:
        tmp = dict(merged)
        tmp.update(yaml_doc)
        merged = Settings(**tmp).model_dump()  # enforces extra="forbid"
        origin = "yaml"

    env_seen = False

    def _env(key: str) -> str:
        nonlocal env_seen
        name = _ENV_PREFIX + key.upper()
        if os.environ.get(name) not in (None, ""):
            env_seen = True
        return name

    # 2) Environment overrides

    merged["debug"] = _env_bool(_env("debug"), merged["debug"])
    merged["version"] = _env_str(_env("version"), merged["version"])

    backend = _env_str(_env("ledger_backend"), merged["ledger_backend"]).lower()
    if backend in ("memory", "jsonrpc"):
        merged["ledger_backend"] = backend
    merged["ledger_rpc_url"] = _env_str(_env("ledger_rpc_url"), merged["ledger_rpc_url"])
    merged["relayer_url"] = _env_str(_env("relayer_url"), merged["relayer_url"])
    merged["contract_address"] = _env_str(_env("contract_address"), merged["contract_address"])
    merged["account"] = _env_str(_env("account"), merged["account"])
    chain_id = _env_int(_env("chain_id"), merged["chain_id"])
    if chain_id > 0:
        merged["chain_id"] = chain_id

    for key, lo, hi in (
        ("remote_call_timeout_s", 0.1, 3600.0),
        ("http_timeout_s", 0.1, 3600.0),
        ("confirmation_timeout_s", 1.0, 86_400.0),
        ("confirmation_poll_interval_s", 0.01, 60.0),
        ("status_success_clear_s", 0.0, 60.0),
        ("status_error_clear_s", 0.0, 60.0),
        ("post_write_refresh_delay_s", 0.0, 300.0),
        ("refresh_interval_s", 0.0, 86_400.0),
        ("active_window_s", 1.0, 31_536_000.0),
    ):
        val = _env_float(_env(key), merged[key])
        if lo <= val <= hi:
            merged[key] = val

    concurrency = _env_int(_env("refresh_concurrency"), merged["refresh_concurrency"])
    if 1 <= concurrency <= 256:
        merged["refresh_concurrency"] = concurrency

    modulus = _env_int(_env("plain_tag_modulus"), merged["plain_tag_modulus"])
    if modulus > 0:
        merged["plain_tag_modulus"] = modulus
    prefix = _env_str(_env("record_id_prefix"), merged["record_id_prefix"])
    if prefix:
        merged["record_id_prefix"] = prefix
    merged["record_category"] = _env_str(_env("record_category"), merged["record_category"])

    merged["log_level"] = _env_str(_env("log_level"), merged["log_level"]).upper() or "INFO"
    merged["metrics_enabled"] = _env_bool(_env("metrics_enabled"), merged["metrics_enabled"])

    if env_seen:
        origin = f"{origin}+env"
    merged["config_origin"] = origin

    return Settings(**merged)


# ---------------------------------------------------------------------------
# Reloadable wrapper
# ---------------------------------------------------------------------------


class ReloadableSettings:
    """
    Thread-safe wrapper around Settings with controlled refresh/override.

      - get(): returns an immutable Settings snapshot.
      - refresh(): reloads from file + env, keeping immutable_fields.
      - set(): in-memory overrides, also keeping immutable_fields.
    """

    def __init__(self, initial: Optional[Settings] = None) -> None:
        self._lock = threading.RLock()
        self._settings = initial or load_settings()

    def get(self) -> Settings:
        with self._lock:
            return self._settings

    def refresh(self) -> Settings:
        with self._lock:
            old = self._settings
            new_data = load_settings().model_dump()
            old_data = old.model_dump()
            for key in old.immutable_fields:
                new_data[key] = old_data[key]
            new_data["immutable_fields"] = old_data["immutable_fields"]
            self._settings = Settings(**new_data)
            if self._settings.config_hash() != old.config_hash():
                _log.info("settings reloaded", extra={"config_origin": self._settings.config_origin})
            return self._settings

    def set(self, **overrides: Any) -> Settings:
        with self._lock:
            current = self._settings
            data = current.model_dump()
            for key, value in overrides.items():
                if key not in data:
                    continue
                if key in current.immutable_fields or key == "immutable_fields":
                    continue
                data[key] = value
            self._settings = Settings(**data)
            return self._settings
