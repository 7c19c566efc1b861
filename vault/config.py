"""
Vault configuration loader.

Goals
-----
- Zero external deps (stdlib only).
- Layered config with clear precedence:
    1) Explicit overrides passed to `load()` (highest)
    2) Environment variables (VAULT_*)
    3) Config file (TOML or JSON)
    4) Built-in defaults (lowest)
- Safe, typed dataclasses with validation (`ConfigError` on bad values).

Sections
--------
  network:     "devnet" | "testnet" | "mainnet"
  tree:        { depth, history_size }
  deposits:    { min_deposit, max_deposit }            (base units, 18 decimals)
  verifier:    { verifying_key_path, allow_fallback, max_records }
  association: { admin, history_size }
  paths:       { data_dir, logs_dir }
  db:          { uri }                                 sqlite:///path | memory://
  log:         { level, format, file }

Amounts may be given as integers (base units) or as decimal strings with a
"units" suffix, e.g. "0.01 units".
"""

from __future__ import annotations

import json
import os
import platform
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from .encoding import parse_units
from .errors import ConfigError

# -- Optional TOML support (Python 3.11+ has tomllib).
try:  # py311+
    import tomllib as _toml  # type: ignore[attr-defined]
except ImportError:  # py310
    _toml = None  # type: ignore[assignment]


# ------------------------------
# Defaults & helpers
# ------------------------------

NETWORKS = ("devnet", "testnet", "mainnet")
DEFAULT_NETWORK = "devnet"

DEFAULT_TREE_DEPTH = 20
DEFAULT_ROOT_HISTORY = 30
MAX_TREE_DEPTH = 32

DECIMALS = 18
DEFAULT_MIN_DEPOSIT = 10 ** 16          # 0.01
DEFAULT_MAX_DEPOSIT = 100 * 10 ** 18    # 100

# SQLite default filename
DEFAULT_DB_FILENAME = "vault.db"


def _expand(p: str | Path) -> Path:
    return Path(p).expanduser().resolve()


def _os_default_data_root() -> Path:
    system = platform.system()
    if system == "Darwin":
        return _expand("~/Library/Application Support")
    if system == "Windows":
        appdata = os.environ.get("APPDATA") or os.environ.get("LOCALAPPDATA")
        if appdata:
            return _expand(appdata)
        return _expand("~\\AppData\\Roaming")
    xdg = os.environ.get("XDG_DATA_HOME")
    return _expand(xdg) if xdg else _expand("~/.local/share")


def _default_data_dir(network: str) -> Path:
    return _os_default_data_root() / "privacy-vault" / network


def _parse_bool(v: str) -> bool:
    return v.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def _env_int(name: str) -> int:
    v = os.environ[name]
    try:
        return int(v, 0)
    except ValueError as e:
        raise ConfigError(f"{name} must be int, got {v!r}", var=name) from e


def _amount(v: Any, name: str) -> int:
    """Accept an int in base units, or "<decimal> units"."""
    if isinstance(v, bool):
        raise ConfigError(f"{name} must be an amount", key=name)
    if isinstance(v, int):
        return v
    s = str(v).strip().lower()
    try:
        if s.endswith("units"):
            return parse_units(s[: -len("units")].strip(), DECIMALS)
        return int(s, 0)
    except ValueError as e:
        raise ConfigError(f"{name}: invalid amount {v!r}", key=name) from e


# ------------------------------
# Typed configuration model
# ------------------------------


@dataclass
class TreeConfig:
    depth: int = DEFAULT_TREE_DEPTH
    history_size: int = DEFAULT_ROOT_HISTORY

    @property
    def capacity(self) -> int:
        return 1 << self.depth


@dataclass
class DepositLimits:
    min_deposit: int = DEFAULT_MIN_DEPOSIT
    max_deposit: int = DEFAULT_MAX_DEPOSIT

    def contains(self, value: int) -> bool:
        return self.min_deposit <= value <= self.max_deposit


@dataclass
class VerifierConfig:
    verifying_key_path: Optional[Path] = None
    # None: fallback allowed everywhere except mainnet
    allow_fallback: Optional[bool] = None
    # None: outcome record is unbounded
    max_records: Optional[int] = None


@dataclass
class AssociationConfig:
    admin: Optional[str] = None
    history_size: int = DEFAULT_ROOT_HISTORY


@dataclass
class PathsConfig:
    data_dir: Path
    logs_dir: Path

    @staticmethod
    def defaults(network: str) -> "PathsConfig":
        root = _default_data_dir(network)
        return PathsConfig(data_dir=root, logs_dir=root / "logs")


@dataclass
class DBConfig:
    uri: str  # sqlite:////abs/path/vault.db or memory://

    @staticmethod
    def sqlite_default(paths: PathsConfig) -> "DBConfig":
        return DBConfig(uri=f"sqlite:///{paths.data_dir / DEFAULT_DB_FILENAME}")

    @property
    def is_file(self) -> bool:
        return self.uri.startswith("sqlite:///")


@dataclass
class LogConfig:
    level: str = "INFO"
    format: Optional[str] = None  # "json" | "text" | None (auto)
    file: Optional[Path] = None


@dataclass
class VaultConfig:
    network: str
    tree: TreeConfig
    deposits: DepositLimits
    verifier: VerifierConfig
    association: AssociationConfig
    paths: PathsConfig
    db: DBConfig
    log: LogConfig = field(default_factory=LogConfig)

    @property
    def fallback_allowed(self) -> bool:
        if self.verifier.allow_fallback is not None:
            return self.verifier.allow_fallback
        return self.network != "mainnet"

    def ensure_dirs(self) -> None:
        self.paths.data_dir.mkdir(parents=True, exist_ok=True)
        self.paths.logs_dir.mkdir(parents=True, exist_ok=True)

    def to_dict(self) -> Dict[str, Any]:
        # Path -> str for JSON friendliness
        def _normalize(obj: Any) -> Any:
            if isinstance(obj, Path):
                return str(obj)
            if isinstance(obj, list):
                return [_normalize(i) for i in obj]
            if isinstance(obj, dict):
                return {k: _normalize(v) for k, v in obj.items()}
            return obj

        return _normalize(asdict(self))


# ------------------------------
# File loader (TOML / JSON)
# ------------------------------


def _load_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"config file not found: {path}", path=str(path))
    suffix = path.suffix.lower()
    with path.open("rb") as f:
        if suffix in {".toml", ".tml"}:
            if not _toml:
                raise ConfigError("tomllib is unavailable (Python < 3.11). Use a JSON config.")
            try:
                return _toml.load(f)  # type: ignore[no-any-return]
            except _toml.TOMLDecodeError as e:
                raise ConfigError(f"invalid TOML: {e}", path=str(path)) from e
        if suffix == ".json":
            try:
                return json.load(f)
            except json.JSONDecodeError as e:
                raise ConfigError(f"invalid JSON: {e}", path=str(path)) from e
        raise ConfigError(f"Unsupported config format: {suffix}. Use .toml or .json", path=str(path))


def _merge_dict(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    """Nested dict merge: values in b override a."""
    out = dict(a)
    for k, v in b.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _merge_dict(out[k], v)  # type: ignore[arg-type]
        else:
            out[k] = v
    return out


def _env_layer() -> Dict[str, Any]:
    env = os.environ
    layer: Dict[str, Any] = {}

    def put(section: Optional[str], key: str, value: Any) -> None:
        if section is None:
            layer[key] = value
        else:
            layer.setdefault(section, {})[key] = value

    if "VAULT_NETWORK" in env:
        put(None, "network", env["VAULT_NETWORK"].strip().lower())
    if "VAULT_TREE_DEPTH" in env:
        put("tree", "depth", _env_int("VAULT_TREE_DEPTH"))
    if "VAULT_ROOT_HISTORY" in env:
        put("tree", "history_size", _env_int("VAULT_ROOT_HISTORY"))
    if "VAULT_MIN_DEPOSIT" in env:
        put("deposits", "min_deposit", env["VAULT_MIN_DEPOSIT"])
    if "VAULT_MAX_DEPOSIT" in env:
        put("deposits", "max_deposit", env["VAULT_MAX_DEPOSIT"])
    if "VAULT_VK_PATH" in env:
        put("verifier", "verifying_key_path", env["VAULT_VK_PATH"] or None)
    if "VAULT_ALLOW_FALLBACK" in env:
        put("verifier", "allow_fallback", _parse_bool(env["VAULT_ALLOW_FALLBACK"]))
    if "VAULT_VERIFIER_MAX_RECORDS" in env:
        put("verifier", "max_records", _env_int("VAULT_VERIFIER_MAX_RECORDS"))
    if "VAULT_ADMIN" in env:
        put("association", "admin", env["VAULT_ADMIN"].strip())
    if "VAULT_DATA_DIR" in env:
        put("paths", "data_dir", env["VAULT_DATA_DIR"])
    if "VAULT_LOGS_DIR" in env:
        put("paths", "logs_dir", env["VAULT_LOGS_DIR"])
    if "VAULT_DB_URI" in env:
        put("db", "uri", env["VAULT_DB_URI"])
    if "VAULT_LOG_LEVEL" in env:
        put("log", "level", env["VAULT_LOG_LEVEL"])
    if "VAULT_LOG_FORMAT" in env:
        put("log", "format", env["VAULT_LOG_FORMAT"])
    if "VAULT_LOG_FILE" in env:
        put("log", "file", env["VAULT_LOG_FILE"] or None)
    return layer


# ------------------------------
# Main loader
# ------------------------------


def load(config_file: Optional[str | Path] = None, **overrides: Any) -> VaultConfig:
    """
    Load the vault configuration.

    Precedence: overrides > env > file > defaults.

    overrides : Any
        Keyword overrides, e.g. load(network="testnet", db={"uri": "memory://"})
    """
    layered: Dict[str, Any] = {}
    if config_file:
        layered = _merge_dict(layered, _load_file(_expand(config_file)))
    layered = _merge_dict(layered, _env_layer())
    if overrides:
        layered = _merge_dict(layered, overrides)

    network = str(layered.get("network") or DEFAULT_NETWORK).strip().lower()
    if network not in NETWORKS:
        raise ConfigError(f"unknown network {network!r}", allowed=list(NETWORKS))

    # Defaults depend on the network, so they are built after it is known.
    paths_def = PathsConfig.defaults(network)
    base: Dict[str, Any] = {
        "tree": asdict(TreeConfig()),
        "deposits": asdict(DepositLimits()),
        "verifier": asdict(VerifierConfig()),
        "association": asdict(AssociationConfig()),
        "paths": {"data_dir": str(paths_def.data_dir), "logs_dir": None},
        "db": {"uri": None},
        "log": asdict(LogConfig()),
    }
    base = _merge_dict(base, {k: v for k, v in layered.items() if k != "network"})

    try:
        data_dir = _expand(base["paths"]["data_dir"])
        paths = PathsConfig(
            data_dir=data_dir,
            logs_dir=_expand(base["paths"]["logs_dir"]) if base["paths"].get("logs_dir") else data_dir / "logs",
        )
        vk_path = base["verifier"].get("verifying_key_path")
        allow = base["verifier"].get("allow_fallback")
        max_records = base["verifier"].get("max_records")
        log_file = base["log"].get("file")
        cfg = VaultConfig(
            network=network,
            tree=TreeConfig(
                depth=int(base["tree"]["depth"]),
                history_size=int(base["tree"]["history_size"]),
            ),
            deposits=DepositLimits(
                min_deposit=_amount(base["deposits"]["min_deposit"], "min_deposit"),
                max_deposit=_amount(base["deposits"]["max_deposit"], "max_deposit"),
            ),
            verifier=VerifierConfig(
                verifying_key_path=_expand(vk_path) if vk_path else None,
                allow_fallback=None if allow is None else bool(allow),
                max_records=None if max_records is None else int(max_records),
            ),
            association=AssociationConfig(
                admin=base["association"].get("admin"),
                history_size=int(base["association"]["history_size"]),
            ),
            paths=paths,
            db=DBConfig(uri=base["db"]["uri"]) if base["db"].get("uri") else DBConfig.sqlite_default(paths),
            log=LogConfig(
                level=str(base["log"]["level"]).upper(),
                format=base["log"].get("format"),
                file=_expand(log_file) if log_file else None,
            ),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigError(f"invalid configuration value: {e}") from e

    _validate_config(cfg)
    if cfg.db.is_file:
        cfg.ensure_dirs()
    return cfg


def _validate_db_uri(uri: str) -> None:
    if uri.startswith("sqlite:///") or uri.startswith("memory://"):
        return
    raise ConfigError(
        f"Unsupported DB URI scheme in {uri!r}. Use sqlite:///path/to.db or memory://",
        uri=uri,
    )


def _validate_config(cfg: VaultConfig) -> None:
    if not 1 <= cfg.tree.depth <= MAX_TREE_DEPTH:
        raise ConfigError(f"tree.depth must be in [1, {MAX_TREE_DEPTH}]", depth=cfg.tree.depth)
    if cfg.tree.history_size < 1:
        raise ConfigError("tree.history_size must be >= 1", history_size=cfg.tree.history_size)
    if cfg.association.history_size < 1:
        raise ConfigError("association.history_size must be >= 1")
    if cfg.verifier.max_records is not None and cfg.verifier.max_records < 1:
        raise ConfigError("verifier.max_records must be >= 1",
                          max_records=cfg.verifier.max_records)
    d = cfg.deposits
    if d.min_deposit <= 0 or d.max_deposit < d.min_deposit:
        raise ConfigError(
            "deposit limits must satisfy 0 < min_deposit <= max_deposit",
            min_deposit=d.min_deposit,
            max_deposit=d.max_deposit,
        )
    _validate_db_uri(cfg.db.uri)

    vk = cfg.verifier.verifying_key_path
    if vk is not None and not vk.exists():
        raise ConfigError(f"verifying key not found at {vk}", path=str(vk))
    if vk is None and not cfg.fallback_allowed:
        raise ConfigError(
            "no verifying key configured and fallback verification is disabled "
            f"on {cfg.network}; set verifier.verifying_key_path",
            network=cfg.network,
        )
    if cfg.log.format is not None and cfg.log.format.lower() not in ("json", "text"):
        raise ConfigError("log.format must be 'json' or 'text'", format=cfg.log.format)


__all__ = [
    "NETWORKS",
    "TreeConfig",
    "DepositLimits",
    "VerifierConfig",
    "AssociationConfig",
    "PathsConfig",
    "DBConfig",
    "LogConfig",
    "VaultConfig",
    "load",
]
