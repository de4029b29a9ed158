"""
Configuration Management System

Hierarchical configuration loading:
1. Environment variables (highest priority)
2. config.yaml file
"""

import os
from typing import Optional, Dict, Any, List
from pathlib import Path
import yaml
from pydantic import BaseModel, Field, validator

from .types import ConfigurationError


def _validate_address(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    if not v.startswith('0x') or len(v) != 42:
        raise ValueError(f"Invalid Ethereum address: {v}")
    return v


class ChainConfig(BaseModel):
    """RPC provider configuration"""
    rpc_http: str = Field(..., description="Primary HTTP RPC endpoint")
    backup_http: Optional[str] = Field(default=None, description="Backup HTTP RPC endpoint")
    chain_id: int = Field(default=1)
    block_time_seconds: int = Field(default=12)


class DescriptorSource(BaseModel):
    """Artwork descriptor contract and the block from which it is authoritative"""
    address: str
    start_block: int = Field(..., ge=0)

    _check_address = validator('address', allow_reuse=True)(_validate_address)


class ContractsConfig(BaseModel):
    """Nouns contract addresses"""
    token: str = Field(default="0x9C8fF314C9Bc7F6e59A9d9225Fb22946427eDC03")
    auction_house: str = Field(default="0x830BD73E4184ceF73443C15111a1DF14e495C706")
    dao: str = Field(default="0x6f3E6272A167e8AcCb32072d08E0957F9c79223d")
    client_rewards: str = Field(default="0x883860178F95d0C82413eDc1D6De530cB4771d55")
    descriptors: List[DescriptorSource] = Field(
        default_factory=lambda: [
            DescriptorSource(address="0x33a9c445fb4fb21f2c030a6b2d3e2f12d017bfac", start_block=20059934)
        ]
    )

    _check_addresses = validator(
        'token', 'auction_house', 'dao', 'client_rewards', allow_reuse=True
    )(_validate_address)

    @validator('descriptors')
    def validate_descriptor_order(cls, v):
        blocks = [d.start_block for d in v]
        if blocks != sorted(blocks) or len(set(blocks)) != len(blocks):
            raise ValueError("Descriptor sources must be strictly ascending by start_block")
        return v


class DatabaseConfig(BaseModel):
    """Database configuration"""
    url: Optional[str] = Field(default=None, description="Full SQLAlchemy URL, overrides host/user/password")
    host: str = Field(default="localhost")
    port: int = Field(default=5432)
    database: str = Field(default="berry")
    user: str = Field(default="berry")
    password: str = Field(default="")
    pool_size: int = Field(default=20)
    max_overflow: int = Field(default=10)

    @property
    def connection_string(self) -> str:
        if self.url:
            return self.url
        return (
            f"postgresql://{self.user}:{self.password}"
            f"@{self.host}:{self.port}/{self.database}"
        )


class RedisConfig(BaseModel):
    """Redis cache configuration"""
    enabled: bool = Field(default=False)
    host: str = Field(default="localhost")
    port: int = Field(default=6379)
    password: Optional[str] = Field(default=None)
    db: int = Field(default=0)
    ttl_seconds: int = Field(default=86400)


class IdentityConfig(BaseModel):
    """Identity (ENS) resolution configuration"""
    base_url: str = Field(default="https://api.ensideas.com/ens/resolve")
    batch_size: int = Field(default=10, ge=1, le=10)
    timeout_seconds: float = Field(default=10.0)
    ttl_seconds: Optional[int] = Field(default=None, description="None keeps entries for the process lifetime")
    max_entries: int = Field(default=50000, ge=1)
    persist: bool = Field(default=True, description="Upsert resolved names into ens_names")


class ArtworkConfig(BaseModel):
    """Artwork rendering and trait metrics configuration"""
    render_enabled: bool = Field(default=True)
    render_timeout_seconds: float = Field(default=10.0)
    image_data_path: Optional[Path] = Field(default=None, description="Nouns image-data JSON for trait metrics")


class RewardsConfig(BaseModel):
    """Reward-cycle evaluation configuration"""
    require_client_attribution: bool = Field(default=False)
    evaluate_after_ingest: bool = Field(default=False)


class IngestionConfig(BaseModel):
    """Event ingestion configuration"""
    max_concurrent_transactions: int = Field(default=16, ge=1)
    batch_size: int = Field(default=1000, ge=1)
    poll_proposals_after_ingest: bool = Field(default=False)


class MonitoringConfig(BaseModel):
    """Logging and metrics configuration"""
    log_dir: Path = Field(default=Path("logs"))
    log_level: str = Field(default="INFO")
    metrics_enabled: bool = Field(default=True)
    metrics_port: int = Field(default=8000)

    @validator('log_level')
    def validate_log_level(cls, v):
        if v.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return v.upper()


class IndexerConfig(BaseModel):
    """Main configuration model"""
    network_name: str = Field(default="mainnet")

    chain: ChainConfig
    contracts: ContractsConfig = Field(default_factory=ContractsConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    identity: IdentityConfig = Field(default_factory=IdentityConfig)
    artwork: ArtworkConfig = Field(default_factory=ArtworkConfig)
    rewards: RewardsConfig = Field(default_factory=RewardsConfig)
    ingestion: IngestionConfig = Field(default_factory=IngestionConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)


class ConfigLoader:
    """Configuration loader with hierarchical loading"""

    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = config_path or Path("config.yaml")
        self._config: Optional[IndexerConfig] = None

    def load(self) -> IndexerConfig:
        """Load configuration from all sources"""
        config_data = self._load_yaml()
        config_data = self._apply_env_overrides(config_data)

        try:
            self._config = IndexerConfig(**config_data)
        except ValueError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

        return self._config

    def _load_yaml(self) -> Dict[str, Any]:
        """Load configuration from YAML file"""
        if not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        with open(self.config_path, 'r') as f:
            return yaml.safe_load(f) or {}

    def _apply_env_overrides(self, config_data: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides"""
        # Database
        if os.getenv('DATABASE_URL'):
            config_data.setdefault('database', {})['url'] = os.getenv('DATABASE_URL')
        if os.getenv('DB_USER'):
            config_data.setdefault('database', {})['user'] = os.getenv('DB_USER')
        if os.getenv('DB_PASSWORD'):
            config_data.setdefault('database', {})['password'] = os.getenv('DB_PASSWORD')
        if os.getenv('DB_HOST'):
            config_data.setdefault('database', {})['host'] = os.getenv('DB_HOST')

        # Redis
        if os.getenv('REDIS_HOST'):
            config_data.setdefault('redis', {})['host'] = os.getenv('REDIS_HOST')
        if os.getenv('REDIS_PASSWORD'):
            config_data.setdefault('redis', {})['password'] = os.getenv('REDIS_PASSWORD')

        # RPC
        if os.getenv('RPC_HTTP'):
            config_data.setdefault('chain', {})['rpc_http'] = os.getenv('RPC_HTTP')

        # Identity service
        if os.getenv('IDENTITY_BASE_URL'):
            config_data.setdefault('identity', {})['base_url'] = os.getenv('IDENTITY_BASE_URL')

        # Monitoring
        if os.getenv('LOG_LEVEL'):
            config_data.setdefault('monitoring', {})['log_level'] = os.getenv('LOG_LEVEL')

        return config_data

    @property
    def config(self) -> IndexerConfig:
        """Get loaded configuration"""
        if self._config is None:
            raise RuntimeError("Configuration not loaded. Call load() first.")
        return self._config


def init_config(config_path: Optional[Path] = None) -> IndexerConfig:
    """Load configuration from ``config_path`` (config.yaml by default)"""
    return ConfigLoader(config_path).load()
