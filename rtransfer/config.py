"""
Configuration Management

Handles loading configuration from environment variables and config files.
"""

import os
from pathlib import Path
from dataclasses import dataclass, field, fields
from typing import Optional
import json

from dotenv import load_dotenv, find_dotenv

from .transfer.protocol import (
    DEFAULT_PORT, DEFAULT_CHUNK_SIZE, DEFAULT_MAX_MODE_LENGTH,
    DEFAULT_MAX_FILENAME_LENGTH,
)
from .file.ledger import LEDGER_SUFFIX, TMP_SUFFIX

ENV_PREFIX = 'RTRANSFER_'
_INT_FIELDS = ('port', 'chunk_size', 'max_mode_length', 'max_filename_length')


def _parse_timeout(value) -> Optional[float]:
    """0, empty or 'none' disables the timeout."""
    if value is None:
        return None
    if isinstance(value, str):
        if value.strip().lower() in ('', 'none', 'off'):
            return None
    value = float(value)
    return value if value > 0 else None


@dataclass
class Config:
    """
    Transfer configuration.

    Configuration priority (highest to lowest):
    1. Command-line options
    2. Environment variables (RTRANSFER_*)
    3. Config file (JSON)
    4. Default values
    """
    # Network
    host: str = '0.0.0.0'
    port: int = DEFAULT_PORT

    # Storage (responder side)
    root_dir: Path = field(default_factory=lambda: Path('.'))

    # Protocol
    chunk_size: int = DEFAULT_CHUNK_SIZE
    max_mode_length: int = DEFAULT_MAX_MODE_LENGTH
    max_filename_length: int = DEFAULT_MAX_FILENAME_LENGTH

    # Timeouts (seconds, None = wait forever)
    io_timeout: Optional[float] = 30.0

    # Progress ledger
    ledger_suffix: str = LEDGER_SUFFIX
    ledger_tmp_suffix: str = TMP_SUFFIX

    # Logging
    log_level: str = 'INFO'

    def __post_init__(self):
        self.root_dir = Path(self.root_dir)
        self.io_timeout = _parse_timeout(self.io_timeout)
        if self.chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive: {self.chunk_size}")
        if not 0 <= self.port <= 65535:
            raise ValueError(f"port out of range: {self.port}")
        if self.max_mode_length <= 0 or self.max_filename_length <= 0:
            raise ValueError("field length limits must be positive")
        if not self.ledger_suffix or not self.ledger_tmp_suffix:
            raise ValueError("ledger suffixes must not be empty")

    @classmethod
    def from_env(cls) -> 'Config':
        """
        Load configuration from environment variables.

        Raises:
            ValueError: if a variable is malformed or out of range
        """
        load_dotenv(find_dotenv(usecwd=True))

        values = {}
        for f in fields(cls):
            raw = os.getenv(f'{ENV_PREFIX}{f.name.upper()}')
            if raw is None:
                continue
            if f.name in _INT_FIELDS:
                try:
                    values[f.name] = int(raw)
                except ValueError:
                    raise ValueError(f"{ENV_PREFIX}{f.name.upper()} must be an integer: {raw!r}")
            elif f.name == 'root_dir':
                if raw:
                    values[f.name] = Path(raw)
            else:
                values[f.name] = raw

        return cls(**values)

    @classmethod
    def from_file(cls, path: Path) -> 'Config':
        """Load configuration from a JSON file."""
        if not path.exists():
            return cls()

        with open(path) as f:
            data = json.load(f)

        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown config keys in {path}: {', '.join(sorted(unknown))}")

        return cls(**data)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'host': self.host,
            'port': self.port,
            'root_dir': str(self.root_dir),
            'chunk_size': self.chunk_size,
            'max_mode_length': self.max_mode_length,
            'max_filename_length': self.max_filename_length,
            'io_timeout': self.io_timeout,
            'ledger_suffix': self.ledger_suffix,
            'ledger_tmp_suffix': self.ledger_tmp_suffix,
            'log_level': self.log_level,
        }

    def save(self, path: Path):
        """Save configuration to a JSON file."""
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)


def load_config(config_path: Optional[Path] = None) -> Config:
    """
    Load configuration from file and environment.

    Environment variables override file settings.
    """
    # Start with defaults
    config = Config()

    # Load from file if provided
    if config_path and config_path.exists():
        config = Config.from_file(config_path)

    # Override with environment variables
    env_config = Config.from_env()

    # Merge (env takes precedence for non-default values)
    defaults = Config()
    for f in fields(Config):
        env_val = getattr(env_config, f.name)
        if env_val != getattr(defaults, f.name):
            setattr(config, f.name, env_val)

    # Timeout explicitly disabled in the environment
    if os.getenv(f'{ENV_PREFIX}IO_TIMEOUT') is not None:
        config.io_timeout = env_config.io_timeout

    return config


# Example config file template
EXAMPLE_CONFIG = """
{
  "host": "0.0.0.0",
  "port": 9000,
  "root_dir": "./received",
  "chunk_size": 8192,
  "io_timeout": 30.0,
  "log_level": "INFO"
}
"""
