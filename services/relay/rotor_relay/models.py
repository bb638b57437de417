from __future__ import annotations

from ipaddress import IPv6Address
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator


class RotationConfig(BaseModel):
    prefix: str = ""                     # e.g. "2001:db8:1234"
    subnet: str = ""                     # e.g. "5678"
    interface: str = "eth0"
    desired_size: int = Field(20, ge=1)
    reconcile_interval_ms: int = Field(5000, ge=100)
    batch_size: int = Field(5, ge=1)
    debug: bool = False
    sudo: bool = False

    @field_validator("prefix", "subnet")
    @classmethod
    def _strip_colons(cls, v: str) -> str:
        return v.strip().strip(":")

    @model_validator(mode="after")
    def _check_composes(self) -> "RotationConfig":
        if not self.enabled:
            return self
        sample = f"{self.prefix}:{self.subnet}:0:0:0:0"
        try:
            IPv6Address(sample)
        except ValueError as e:
            raise ValueError(
                f"prefix {self.prefix!r} + subnet {self.subnet!r} do not form a valid IPv6 /64: {e}"
            ) from e
        return self

    @property
    def enabled(self) -> bool:
        return bool(self.prefix and self.subnet)

    @property
    def reconcile_interval(self) -> float:
        return self.reconcile_interval_ms / 1000.0


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = Field(3030, ge=1, le=65535)
    request_timeout: float = Field(30.0, gt=0)


class Config(BaseModel):
    rotation: RotationConfig = Field(default_factory=RotationConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper(cls, v):
        return str(v).upper()
