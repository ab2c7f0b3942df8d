"""
Hop Configuration Management
============================
Handles config loading, endpoint rule validation, and platform-specific paths.
"""

from __future__ import annotations

import base64
import binascii
import copy
import json
import os
import re
import urllib.parse
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from platformdirs import user_config_dir, user_data_dir

from hop.errors import ConfigError

APP_NAME = "hop"

# ── paths ────────────────────────────────────────────────────────────────────

_HOME_OVERRIDE = os.environ.get("HOP_HOME")

CONFIG_DIR = Path(_HOME_OVERRIDE) if _HOME_OVERRIDE else Path(user_config_dir(APP_NAME))
DATA_DIR = Path(_HOME_OVERRIDE) if _HOME_OVERRIDE else Path(user_data_dir(APP_NAME))
RUN_DIR = DATA_DIR / "run"
CERTS_DIR = CONFIG_DIR / "certs"
CONFIG_FILE = CONFIG_DIR / "config.yaml"
REGISTRY_FILE = RUN_DIR / "registry.json"


def ensure_dirs() -> None:
    """Create all required directories."""
    for d in (CONFIG_DIR, DATA_DIR, RUN_DIR, CERTS_DIR):
        d.mkdir(parents=True, exist_ok=True)


# ── default config ───────────────────────────────────────────────────────────

DEFAULT_CONFIG: Dict[str, Any] = {
    "settings": {
        "bind_host": "127.0.0.1",
        "connect_timeout": 10.0,
        "shutdown_timeout": 1.0,
        "external_stop_timeout": 5.0,
        "log_level": "INFO",
    },
    "proxies": [],
}

NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")


@dataclass
class CorsConfig:
    allow_origin: Optional[str] = None
    allow_headers: Optional[Union[List[str], str]] = None
    allow_methods: Optional[List[str]] = None
    allow_credentials: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CorsConfig":
        def pick(camel: str, snake: str) -> Any:
            return data.get(camel, data.get(snake))

        credentials = pick("allowCredentials", "allow_credentials")
        return cls(
            allow_origin=pick("allowOrigin", "allow_origin"),
            allow_headers=pick("allowHeaders", "allow_headers"),
            allow_methods=pick("allowMethods", "allow_methods"),
            allow_credentials=credentials is not False,
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.allow_origin is not None:
            data["allowOrigin"] = self.allow_origin
        if self.allow_headers is not None:
            data["allowHeaders"] = self.allow_headers
        if self.allow_methods is not None:
            data["allowMethods"] = self.allow_methods
        if not self.allow_credentials:
            data["allowCredentials"] = False
        return data


@dataclass
class ProxyRule:
    """One configured endpoint: a local port forwarded to a remote target."""
    name: str
    port: int
    target: str
    paths: List[str] = field(default_factory=list)
    path_rewrite: Dict[str, str] = field(default_factory=dict)
    headers: Dict[str, str] = field(default_factory=dict)
    cors: Optional[CorsConfig] = None
    https: bool = False
    plugins: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProxyRule":
        cors = data.get("cors")
        rewrite = data.get("pathRewrite", data.get("path_rewrite")) or {}
        return cls(
            name=str(data.get("name", "")),
            port=data.get("port", 0),
            target=str(data.get("target", "")),
            paths=list(data.get("paths") or []),
            path_rewrite={str(k): str(v) for k, v in rewrite.items()},
            headers={str(k): str(v) for k, v in (data.get("headers") or {}).items()},
            cors=CorsConfig.from_dict(cors) if isinstance(cors, dict) else None,
            https=bool(data.get("https", False)),
            plugins=list(data.get("plugins") or []),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "name": self.name,
            "port": self.port,
            "target": self.target,
        }
        if self.paths:
            data["paths"] = list(self.paths)
        if self.path_rewrite:
            data["pathRewrite"] = dict(self.path_rewrite)
        if self.headers:
            data["headers"] = dict(self.headers)
        if self.cors is not None:
            data["cors"] = self.cors.to_dict()
        if self.https:
            data["https"] = True
        if self.plugins:
            data["plugins"] = list(self.plugins)
        return data


@dataclass
class Settings:
    bind_host: str = "127.0.0.1"
    connect_timeout: float = 10.0
    shutdown_timeout: float = 1.0
    external_stop_timeout: float = 5.0
    log_level: str = "INFO"


@dataclass
class HopConfig:
    settings: Settings = field(default_factory=Settings)
    proxies: List[ProxyRule] = field(default_factory=list)


# ── validation ───────────────────────────────────────────────────────────────

def validate_rule(rule: ProxyRule) -> List[str]:
    """Return a list of problems with a single rule (empty when valid)."""
    errors: List[str] = []
    label = rule.name or "<unnamed>"

    if not rule.name:
        errors.append("Proxy name is required")
    elif not NAME_PATTERN.match(rule.name):
        errors.append(
            f"{label}: name must contain only letters, numbers, hyphens, and underscores"
        )

    if isinstance(rule.port, bool) or not isinstance(rule.port, int) or not 1 <= rule.port <= 65535:
        errors.append(f"{label}: port must be a number between 1 and 65535 (got {rule.port!r})")

    parsed = urllib.parse.urlparse(rule.target)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        errors.append(f"{label}: target must be an absolute http(s) URL (got {rule.target!r})")

    for prefix in rule.paths:
        if not prefix.startswith("/"):
            errors.append(f"{label}: path {prefix!r} must start with '/'")

    for pattern, replacement in rule.path_rewrite.items():
        try:
            compiled = re.compile(pattern)
        except re.error as e:
            errors.append(f"{label}: invalid pathRewrite pattern {pattern!r}: {e}")
            continue
        # Parses the replacement template, so bad group references fail here
        try:
            compiled.sub(replacement, "")
        except (re.error, IndexError, TypeError) as e:
            errors.append(f"{label}: invalid pathRewrite replacement {replacement!r}: {e}")

    if isinstance(rule.cors, CorsConfig):
        headers = rule.cors.allow_headers
        if headers is not None and headers != "*" and not isinstance(headers, list):
            errors.append(f"{label}: cors.allowHeaders must be a list or '*'")

    return errors


def validate_config(cfg: HopConfig) -> None:
    """Validate every rule plus name/port uniqueness. Raises ConfigError."""
    errors: List[str] = []
    seen_names: Dict[str, int] = {}
    seen_ports: Dict[int, str] = {}

    for rule in cfg.proxies:
        errors.extend(validate_rule(rule))
        if rule.name in seen_names:
            errors.append(f"Proxy name \"{rule.name}\" is configured more than once")
        seen_names[rule.name] = rule.port
        if rule.port in seen_ports:
            errors.append(
                f"Port {rule.port} is used by both {seen_ports[rule.port]} and {rule.name}"
            )
        seen_ports[rule.port] = rule.name

    if errors:
        raise ConfigError("Invalid proxy configuration", errors)


# ── load / save ──────────────────────────────────────────────────────────────

def load_config(path: Optional[Path] = None) -> HopConfig:
    """Load configuration from disk, env vars, and defaults."""
    config_file = Path(path) if path else CONFIG_FILE
    if path is None:
        ensure_dirs()

    raw: Dict[str, Any] = {}
    if config_file.exists():
        try:
            with open(config_file) as f:
                raw = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to load config {config_file}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigError(f"Failed to load config {config_file}: expected a mapping")
    elif path is None:
        save_config(HopConfig(), config_file)

    merged = _deep_merge(DEFAULT_CONFIG, raw)

    # Env-var overrides
    if os.environ.get("HOP_BIND_HOST"):
        merged["settings"]["bind_host"] = os.environ["HOP_BIND_HOST"]
    if os.environ.get("HOP_CONNECT_TIMEOUT"):
        try:
            merged["settings"]["connect_timeout"] = float(os.environ["HOP_CONNECT_TIMEOUT"])
        except ValueError:
            raise ConfigError(
                f"HOP_CONNECT_TIMEOUT must be a number (got {os.environ['HOP_CONNECT_TIMEOUT']!r})"
            ) from None
    if os.environ.get("HOP_LOG_LEVEL"):
        merged["settings"]["log_level"] = os.environ["HOP_LOG_LEVEL"].upper()

    known = Settings.__dataclass_fields__
    settings = Settings(**{k: v for k, v in merged["settings"].items() if k in known})
    proxies = [ProxyRule.from_dict(p) for p in merged.get("proxies") or [] if isinstance(p, dict)]

    cfg = HopConfig(settings=settings, proxies=proxies)
    validate_config(cfg)
    return cfg


def save_config(cfg: HopConfig, path: Optional[Path] = None) -> None:
    """Persist configuration to disk."""
    config_file = Path(path) if path else CONFIG_FILE
    config_file.parent.mkdir(parents=True, exist_ok=True)
    data = {
        "settings": {
            "bind_host": cfg.settings.bind_host,
            "connect_timeout": cfg.settings.connect_timeout,
            "shutdown_timeout": cfg.settings.shutdown_timeout,
            "external_stop_timeout": cfg.settings.external_stop_timeout,
            "log_level": cfg.settings.log_level,
        },
        "proxies": [p.to_dict() for p in cfg.proxies],
    }
    with open(config_file, "w") as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    result = copy.deepcopy(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


# ── rule lookup ──────────────────────────────────────────────────────────────

def get_proxy(cfg: HopConfig, name_or_port: Union[str, int]) -> Optional[ProxyRule]:
    """Find a rule by name, or by port when given an int."""
    for rule in cfg.proxies:
        if isinstance(name_or_port, int):
            if rule.port == name_or_port:
                return rule
        elif rule.name == name_or_port:
            return rule
    return None


def add_proxy(cfg: HopConfig, rule: ProxyRule) -> None:
    """Append a rule, rejecting duplicate names and ports."""
    errors = validate_rule(rule)
    if errors:
        raise ConfigError(f"Invalid proxy {rule.name or '<unnamed>'}", errors)
    if get_proxy(cfg, rule.name):
        raise ConfigError(f"Proxy name \"{rule.name}\" is already configured")
    if get_proxy(cfg, rule.port):
        raise ConfigError(f"Port {rule.port} is already configured")
    cfg.proxies.append(rule)


def remove_proxy(cfg: HopConfig, name_or_port: Union[str, int]) -> ProxyRule:
    """Remove and return a rule by name or port."""
    rule = get_proxy(cfg, name_or_port)
    if rule is None:
        raise ConfigError(f"No proxy found: {name_or_port}")
    cfg.proxies.remove(rule)
    return rule


# ── sharing ──────────────────────────────────────────────────────────────────

def export_rules(rules: List[ProxyRule]) -> str:
    """Encode rules as base64 JSON, the form ``hop import`` accepts."""
    data = json.dumps([r.to_dict() for r in rules])
    return base64.b64encode(data.encode("utf-8")).decode("ascii")


def parse_rules(source: str) -> List[ProxyRule]:
    """
    Read shared rules from a file path, a base64 string, or raw JSON.

    The decoded document may be a list of rules, a whole config mapping
    with a ``proxies`` key, or a single rule. Rules are not validated here;
    :func:`add_proxy` does that when they are added.
    """
    text = source
    if os.path.isfile(source):
        try:
            text = Path(source).read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigError(f"Cannot read {source}: {e}") from e

    data = _decode_shared(text.strip())

    if isinstance(data, dict):
        if isinstance(data.get("proxies"), list):
            data = data["proxies"]
        elif "name" in data and "target" in data:
            data = [data]
    if not isinstance(data, list) or not all(isinstance(item, dict) for item in data):
        raise ConfigError("Invalid config format: expected a proxy, a list of proxies, or a config")

    return [ProxyRule.from_dict(item) for item in data]


def _decode_shared(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError:
        pass
    try:
        return json.loads(base64.b64decode(text, validate=True).decode("utf-8"))
    except (binascii.Error, ValueError):
        raise ConfigError(
            "Invalid input. Expected a file path, a base64 string, or a JSON string"
        ) from None
