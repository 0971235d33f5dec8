import os
from pathlib import Path
from typing import Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from ..models import canonical_address, is_address
from .logging_config import StructuredLogger

logger = StructuredLogger(__name__)

DEFAULT_HOME = Path.home() / ".escrow-sync"


class GatewayConfig(BaseModel):
    base_url: str = "http://127.0.0.1:8545/gateway"
    timeout_seconds: float = Field(30.0, gt=0)
    confirmation_timeout_seconds: float = Field(180.0, gt=0)
    poll_interval_seconds: float = Field(2.0, gt=0)


class SyncConfig(BaseModel):
    settle_delay_seconds: float = Field(0.5, ge=0)
    refresh_retries: int = Field(2, ge=0, le=10)
    refresh_backoff_seconds: float = Field(1.5, ge=0)
    event_window_blocks: int = Field(10, ge=1)


class RegistryConfig(BaseModel):
    fallback_path: str = str(DEFAULT_HOME / "data" / "escrows.json")
    default_limit: int = Field(20, ge=1, le=200)


class EscrowSyncConfig(BaseModel):
    version: int = Field(1, ge=1, le=1)
    rpc_url: str = Field(..., min_length=1)
    factory_address: str
    chain_id: int = Field(11155111, ge=1)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    roles: Dict[str, str] = Field(default_factory=dict)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)

    @field_validator("factory_address")
    def validate_factory_address(cls, v):
        if not is_address(v):
            raise ValueError(f"factory_address '{v}' is not a valid address")
        return canonical_address(v)

    @field_validator("roles")
    def validate_roles(cls, v):
        out = {}
        for role, address in v.items():
            if role not in ("client", "provider"):
                raise ValueError(f"Unknown role '{role}' (expected client or provider)")
            if not is_address(address):
                raise ValueError(f"Role '{role}' address '{address}' is not a valid address")
            out[role] = canonical_address(address)
        return out


# Environment wins over escrow.yaml for these keys.
_ENV_OVERRIDES = {
    "ESCROW_RPC_URL": ("rpc_url",),
    "FACTORY_ADDRESS": ("factory_address",),
    "ESCROW_GATEWAY_URL": ("gateway", "base_url"),
}


def _apply_env_overrides(raw: dict) -> dict:
    data = dict(raw)
    for env_name, path in _ENV_OVERRIDES.items():
        value = (os.getenv(env_name) or "").strip()
        if not value:
            continue
        if len(path) == 1:
            data[path[0]] = value
        else:
            section = dict(data.get(path[0]) or {})
            section[path[1]] = value
            data[path[0]] = section
    return data


class ConfigLoader:
    """Loads escrow.yaml; a failed reload leaves the last good config in place."""

    def __init__(self):
        self.config_dir = Path(os.getenv("ESCROW_SYNC_CONFIG_DIR", str(DEFAULT_HOME / "config")))
        self.config_file = self.config_dir / "escrow.yaml"
        self.config: Optional[EscrowSyncConfig] = None

    def _parse(self) -> EscrowSyncConfig:
        raw = yaml.safe_load(self.config_file.read_text()) or {}
        if not isinstance(raw, dict):
            raise ValueError("top-level YAML value must be a mapping")
        return EscrowSyncConfig(**_apply_env_overrides(raw))

    def load_config(self) -> EscrowSyncConfig:
        if not self.config_file.is_file():
            logger.critical("escrow.yaml missing", path=str(self.config_file))
            raise FileNotFoundError(f"No escrow.yaml at {self.config_file}")
        try:
            candidate = self._parse()
        except (yaml.YAMLError, ValueError) as exc:
            retained = self.config is not None
            logger.error("Rejected escrow.yaml", path=str(self.config_file), error=str(exc), retained=retained)
            suffix = "previous config retained" if retained else "no fallback"
            raise ValueError(f"Invalid configuration ({suffix}): {exc}") from exc

        self.config = candidate
        logger.info(
            "Configuration loaded",
            path=str(self.config_file),
            factory=candidate.factory_address,
            roles=sorted(candidate.roles),
        )
        return candidate

    def get_config(self) -> EscrowSyncConfig:
        return self.config or self.load_config()

    def role_address(self, role: str) -> Optional[str]:
        return self.get_config().roles.get(role)


config_loader = ConfigLoader()
