"""
Configuration management for the token ledger.
"""
import json
import logging
import os
from typing import Optional
from dataclasses import dataclass, asdict, field

from antimev.crypto import ZERO_ADDRESS, parse_address
from antimev.errors import ConfigurationError

TOKEN_UNIT = 10 ** 18


@dataclass
class TokenConfig:
    """Token construction parameters."""
    name: str = "AntiMEV"
    symbol: str = "AMV"
    decimals: int = 18
    initial_supply: int = 1_000_000 * TOKEN_UNIT
    pool_address: Optional[str] = None  # hex, required
    cooldown_blocks: int = 3  # blocks before a direction reversal is allowed

    @property
    def pool_address_bytes(self) -> bytes:
        if not self.pool_address:
            raise ConfigurationError("pool_address is required")
        try:
            return parse_address(self.pool_address)
        except ValueError as e:
            raise ConfigurationError(f"Invalid pool_address {self.pool_address!r}: {e}") from e

    def validate(self):
        if self.pool_address_bytes == ZERO_ADDRESS:
            raise ConfigurationError("pool_address cannot be the zero address")
        if isinstance(self.cooldown_blocks, bool) or not isinstance(self.cooldown_blocks, int):
            raise ConfigurationError(
                f"cooldown_blocks must be an integer, got {self.cooldown_blocks!r}"
            )
        if self.cooldown_blocks < 1:
            raise ConfigurationError(
                f"cooldown_blocks must be >= 1, got {self.cooldown_blocks}"
            )
        if not isinstance(self.initial_supply, int) or self.initial_supply < 0:
            raise ConfigurationError("initial_supply must be a non-negative integer")
        if not self.name or not self.symbol:
            raise ConfigurationError("Token name and symbol are required")


@dataclass
class ChainConfig:
    chain_id: int = 1


@dataclass
class DatabaseConfig:
    """Database configuration. No path means an in-memory database."""
    path: Optional[str] = None
    write_buffer_size: int = 64 * 1024 * 1024  # 64MB
    max_open_files: int = 1000
    compression: Optional[str] = "snappy"


@dataclass
class MonitoringConfig:
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 9090


@dataclass
class LoggingConfig:
    level: str = "INFO"
    format: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"

    def apply(self):
        """Configure the root logger."""
        logging.basicConfig(level=self.level.upper(), format=self.format, force=True)


@dataclass
class Config:
    """Main configuration."""
    token: TokenConfig = field(default_factory=TokenConfig)
    chain: ChainConfig = field(default_factory=ChainConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> 'Config':
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> 'Config':
        try:
            return cls(
                token=TokenConfig(**data.get('token', {})),
                chain=ChainConfig(**data.get('chain', {})),
                database=DatabaseConfig(**data.get('database', {})),
                monitoring=MonitoringConfig(**data.get('monitoring', {})),
                logging=LoggingConfig(**data.get('logging', {})),
            )
        except TypeError as e:
            raise ConfigurationError(f"Unknown configuration option: {e}") from e

    @classmethod
    def from_file(cls, path: str) -> 'Config':
        """Load configuration from JSON file."""
        with open(path, 'r') as f:
            data = json.load(f)
        return cls.from_dict(data)

    def to_file(self, path: str):
        """Save configuration to JSON file."""
        os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    def to_dict(self) -> dict:
        return {
            'token': asdict(self.token),
            'chain': asdict(self.chain),
            'database': asdict(self.database),
            'monitoring': asdict(self.monitoring),
            'logging': asdict(self.logging),
        }

    def validate(self):
        self.token.validate()
