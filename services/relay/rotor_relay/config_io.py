from __future__ import annotations

import os
import socket
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from pydantic import ValidationError

from rotor_relay.models import Config

DEFAULT_CONFIG_PATH = "/app/config/config.yaml"

# env -> (section, key)
ENV_OVERRIDES = {
    "IPV6_PREFIX": ("rotation", "prefix"),
    "IPV6_SUBNET": ("rotation", "subnet"),
    "IPV6_INTERFACE": ("rotation", "interface"),
    "IPV6_POOL_SIZE": ("rotation", "desired_size"),
    "IPV6_POOL_INTERVAL": ("rotation", "reconcile_interval_ms"),
    "IPV6_BATCH_SIZE": ("rotation", "batch_size"),
    "IPV6_DEBUG": ("rotation", "debug"),
    "IPV6_SUDO": ("rotation", "sudo"),
    "HOST": ("server", "host"),
    "PORT": ("server", "port"),
    "REQUEST_TIMEOUT": ("server", "request_timeout"),
    "LOG_LEVEL": (None, "log_level"),
}

_BOOL_KEYS = {"debug", "sudo"}


def detect_interface() -> str:
    """Первый не-loopback интерфейс хоста, иначе eth0."""
    try:
        names = [name for _, name in socket.if_nameindex()]
    except (AttributeError, OSError):
        return "eth0"
    for name in names:
        low = name.lower()
        if low == "lo" or low.startswith("loopback") or (low.startswith("lo") and low[2:].isdigit()):
            continue
        return name
    return "eth0"


def _apply_env(doc: Dict[str, Any], env: Mapping[str, str]) -> Dict[str, Any]:
    for var, (section, key) in ENV_OVERRIDES.items():
        raw = env.get(var)
        if raw is None or raw == "":
            continue
        value: Any = raw.strip().lower() == "true" if key in _BOOL_KEYS else raw
        if section is None:
            doc[key] = value
        else:
            doc.setdefault(section, {})
            if doc[section] is None:
                doc[section] = {}
            doc[section][key] = value
    return doc


def load_config(path: Optional[str] = None, env: Optional[Mapping[str, str]] = None) -> Config:
    """
    YAML (если файл есть) + переопределения из окружения.
    Ошибки чтения/валидации поднимаются как ValueError.
    """
    p = Path(path or DEFAULT_CONFIG_PATH)
    doc: Dict[str, Any] = {}
    if p.exists():
        try:
            with p.open("r", encoding="utf-8") as f:
                doc = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"cannot parse {p}: {e}") from e
        if not isinstance(doc, dict):
            raise ValueError(f"{p}: top level must be a mapping")

    doc = _apply_env(doc, os.environ if env is None else env)

    rotation = doc.get("rotation") or {}
    if not rotation.get("interface"):
        rotation["interface"] = detect_interface()
    doc["rotation"] = rotation

    try:
        return Config.model_validate(doc)
    except ValidationError as e:
        raise ValueError(f"invalid config: {e}") from e
