# shadowsync/config.py
from __future__ import annotations

import hashlib
import json
import logging
import os
from typing import Any, Dict, FrozenSet, List, Mapping, Optional

try:
    import yaml  # type: ignore
except Exception:  # pragma: no cover
    yaml = None

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from .codec import to_address
from .errors import ConfigurationError, ValidationError


_log = logging.getLogger(__name__)

ENV_PREFIX = "SHADOWSYNC_"


# ---------------------------------------------------------------------------
# Env helpers
# ---------------------------------------------------------------------------


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        _log.warning("ignoring non-numeric %s=%r", name, raw)
        return default


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw, 0)
    except ValueError:
        _log.warning("ignoring non-integer %s=%r", name, raw)
        return default


def _load_yaml_mapping(path: str) -> Dict[str, Any]:
    """
    Load a simple top-level mapping from YAML.

    Constraints:
      - Ignore if path missing or YAML not available.
      - Only accept dict at top-level.
      - Non-scalar values are kept only for known list/dict fields.
    """
    if not path or yaml is None:
        return {}
    if not os.path.exists(path):
        _log.warning("config file %s does not exist; using defaults/env", path)
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            doc = yaml.safe_load(f)
    except Exception as e:
        raise ConfigurationError(f"failed to load YAML config from {path}: {e}") from e
    if not isinstance(doc, dict):
        return {}
    out: Dict[str, Any] = {}
    for k, v in doc.items():
        if isinstance(v, (str, int, float, bool)) or v is None:
            out[str(k)] = v
        elif str(k) == "service_tokens" and isinstance(v, dict):
            out[str(k)] = {str(a): str(b) for a, b in v.items()}
        else:
            out[str(k)] = str(v)
    return out


def _parse_token_map(raw: str) -> Dict[str, str]:
    """Parse "token1:0xaddr1,token2:0xaddr2" into {token: address}."""
    out: Dict[str, str] = {}
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        token, sep, addr = part.partition(":")
        if not sep or not token.strip() or not addr.strip():
            raise ConfigurationError("SHADOWSYNC_SERVICE_TOKENS entries must be token:address")
        out[token.strip()] = addr.strip()
    return out


# ---------------------------------------------------------------------------
# Settings model (single snapshot, loaded once at startup)
# ---------------------------------------------------------------------------

_ADDRESS_FIELDS: FrozenSet[str] = frozenset(
    {"primary_contract", "relayer_address", "admin_owner", "mediator_address"}
)

# Never written to logs or config hashes.
_SECRET_FIELDS: FrozenSet[str] = frozenset({"shadow_token", "service_tokens"})


class Settings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    # --- Primary ledger (read side) ---------------------------------------

    primary_rpc_url: str = ""
    primary_contract: str = ""
    rpc_timeout_s: float = 12.0
    rpc_max_retries: int = 5

    # --- Shadow side (relay target) ---------------------------------------

    shadow_url: str = ""
    shadow_token: str = ""
    relayer_address: str = ""

    # --- Relay pipeline ---------------------------------------------------

    batch_size: int = 10
    batch_interval_s: float = 30.0
    start_block: int = 0
    chunk_size: int = 500
    poll_interval_s: float = 2.0
    checkpoint_path: str = ".shadowsync-state.json"

    # --- Resync tool ------------------------------------------------------

    sync_batch_size: int = 50
    token_id_start: int = 0

    # --- Shadow service ---------------------------------------------------

    shadow_dsn: str = "mem://"
    admin_owner: str = ""
    mediator_address: str = ""
    service_tokens: Dict[str, str] = {}
    service_host: str = "127.0.0.1"
    service_port: int = 8080

    # --- Observability ----------------------------------------------------

    log_level: str = "INFO"
    prometheus_port: int = 0

    # Indicates how this config reached the process (defaults/yaml/env)
    config_origin: str = "defaults"

    # ------------------------------------------------------------------ #
    # Derived helpers
    # ------------------------------------------------------------------ #

    def require(self, *fields: str) -> "Settings":
        """
        Raise ConfigurationError naming every field that is empty, and every
        address field that is malformed.
        """
        missing: List[str] = []
        bad: List[str] = []
        data = self.model_dump()
        for name in fields:
            value = data.get(name)
            if value in (None, "", {}):
                missing.append(name)
                continue
            if name in _ADDRESS_FIELDS:
                try:
                    to_address(value)
                except ValidationError:
                    bad.append(name)
        if missing:
            raise ConfigurationError(
                "missing required configuration: "
                + ", ".join(missing)
                + f" (set {ENV_PREFIX}<NAME> or a YAML file via {ENV_PREFIX}CONFIG_PATH)"
            )
        if bad:
            raise ConfigurationError("malformed address in configuration: " + ", ".join(bad))
        return self

    def public_view(self) -> Dict[str, Any]:
        data = self.model_dump()
        for k in _SECRET_FIELDS:
            if data.get(k):
                data[k] = "<redacted>"
        return data

    def config_hash(self) -> str:
        """Stable digest of the non-secret settings; safe to log."""
        payload = json.dumps(self.public_view(), sort_keys=True, separators=(",", ":"))
        return hashlib.blake2s(payload.encode("utf-8"), digest_size=16).hexdigest()


# ---------------------------------------------------------------------------
# Loading / merging
# ---------------------------------------------------------------------------


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Load Settings from defaults, optional YAML, and environment variables.

    Priority:
      1. Settings defaults (in-code).
      2. YAML file pointed to by SHADOWSYNC_CONFIG_PATH.
      3. Environment variables (SHADOWSYNC_*), with bounds checks.
    """
    env = os.environ if env is None else env
    merged: Dict[str, Any] = Settings().model_dump()
    origin = "defaults"

    # 1) YAML overlay
    yaml_path = (env.get(ENV_PREFIX + "CONFIG_PATH") or "").strip()
    yaml_doc = _load_yaml_mapping(yaml_path)
    if yaml_doc:
        merged.update(yaml_doc)
        origin = "yaml"

    # 2) Environment overrides
    def _s(key: str) -> None:
        name = ENV_PREFIX + key.upper()
        raw = env.get(name)
        if raw is not None and raw != "":
            merged[key] = raw.strip()

    for key in (
        "primary_rpc_url",
        "primary_contract",
        "shadow_url",
        "shadow_token",
        "relayer_address",
        "checkpoint_path",
        "shadow_dsn",
        "admin_owner",
        "mediator_address",
        "service_host",
        "log_level",
    ):
        _s(key)

    def _bounded_int(key: str, lo: int, hi: int) -> None:
        v = _env_int(env, ENV_PREFIX + key.upper(), int(merged[key]))
        if lo <= v <= hi:
            merged[key] = v
        else:
            _log.warning("ignoring out-of-range %s%s=%d", ENV_PREFIX, key.upper(), v)

    def _bounded_float(key: str, lo: float, hi: float) -> None:
        v = _env_float(env, ENV_PREFIX + key.upper(), float(merged[key]))
        if lo <= v <= hi:
            merged[key] = v
        else:
            _log.warning("ignoring out-of-range %s%s=%s", ENV_PREFIX, key.upper(), v)

    _bounded_int("batch_size", 1, 10_000)
    _bounded_float("batch_interval_s", 0.05, 86_400.0)
    _bounded_int("start_block", 0, 2**63 - 1)
    _bounded_int("chunk_size", 1, 100_000)
    _bounded_float("poll_interval_s", 0.01, 3_600.0)
    _bounded_float("rpc_timeout_s", 0.1, 600.0)
    _bounded_int("rpc_max_retries", 1, 50)
    _bounded_int("sync_batch_size", 1, 10_000)
    _bounded_int("token_id_start", 0, 2**255)
    _bounded_int("service_port", 0, 65_535)
    _bounded_int("prometheus_port", 0, 65_535)

    raw_tokens = env.get(ENV_PREFIX + "SERVICE_TOKENS")
    if raw_tokens:
        merged["service_tokens"] = _parse_token_map(raw_tokens)

    if any(k.startswith(ENV_PREFIX) for k in env):
        origin = "env" if origin == "defaults" else origin + "+env"
    merged["config_origin"] = origin

    try:
        return Settings(**merged)
    except PydanticValidationError as e:
        raise ConfigurationError(f"invalid configuration: {e}") from e


__all__ = ["Settings", "load_settings", "ENV_PREFIX"]
