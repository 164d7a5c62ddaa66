"""
Configuration Management

Handles loading configuration from environment variables and config files.
"""

import os
from pathlib import Path
from dataclasses import dataclass, field
from typing import List, Optional
import json

from dotenv import load_dotenv


DEFAULT_ICE_SERVERS = [
    'stun:stun.l.google.com:19302',
    'stun:stun1.l.google.com:19302',
]


@dataclass
class Config:
    """
    PeerDrop Configuration.

    Configuration priority (highest to lowest):
    1. Environment variables (PEERDROP_*)
    2. Config file (config.json)
    3. Default values
    """
    # Signaling service
    signaling_url: str = 'ws://localhost:8080/ws'
    api_host: str = '0.0.0.0'
    api_port: int = 8080
    code_ttl: float = 300.0

    # Relay
    relay_host: str = 'localhost'
    relay_port: int = 8470

    # Direct channel
    prefer_direct: bool = True
    ice_servers: List[str] = field(default_factory=lambda: list(DEFAULT_ICE_SERVERS))
    negotiation_timeout: float = 10.0
    negotiation_attempts: int = 2

    # Chunking
    direct_chunk_size: int = 16 * 1024  # 16KB
    relay_chunk_size: int = 256 * 1024  # 256KB
    min_chunk_size: int = 1024  # 1KB
    max_chunks: int = 1024 * 1024

    # Retry
    retry_max_attempts: int = 5
    retry_base_delay: float = 1.0
    retry_max_delay: float = 16.0

    # Timeouts (seconds)
    connect_timeout: float = 10.0
    ack_timeout: float = 30.0

    # Storage
    download_dir: Path = field(default_factory=lambda: Path('./downloads'))

    # Logging
    log_level: str = 'INFO'

    @property
    def signaling_http_url(self) -> str:
        """HTTP base URL of the signaling service, derived from the WebSocket URL."""
        url = self.signaling_url
        if url.startswith('wss://'):
            url = 'https://' + url[len('wss://'):]
        elif url.startswith('ws://'):
            url = 'http://' + url[len('ws://'):]
        if url.endswith('/ws'):
            url = url[:-len('/ws')]
        return url.rstrip('/')

    @classmethod
    def from_env(cls) -> 'Config':
        """Load configuration from environment variables."""
        load_dotenv()

        config = cls()

        # Signaling service
        config.signaling_url = os.getenv('PEERDROP_SIGNALING_URL', config.signaling_url)
        config.api_host = os.getenv('PEERDROP_API_HOST', config.api_host)
        config.api_port = int(os.getenv('PEERDROP_API_PORT', config.api_port))
        config.code_ttl = float(os.getenv('PEERDROP_CODE_TTL', config.code_ttl))

        # Relay
        config.relay_host = os.getenv('PEERDROP_RELAY_HOST', config.relay_host)
        config.relay_port = int(os.getenv('PEERDROP_RELAY_PORT', config.relay_port))

        # Direct channel
        config.prefer_direct = os.getenv('PEERDROP_PREFER_DIRECT', 'true').lower() == 'true'

        ice = os.getenv('PEERDROP_ICE_SERVERS', '')
        if ice:
            config.ice_servers = [url.strip() for url in ice.split(',') if url.strip()]

        config.negotiation_timeout = float(
            os.getenv('PEERDROP_NEGOTIATION_TIMEOUT', config.negotiation_timeout)
        )
        config.negotiation_attempts = int(
            os.getenv('PEERDROP_NEGOTIATION_ATTEMPTS', config.negotiation_attempts)
        )

        # Retry
        config.retry_max_attempts = int(
            os.getenv('PEERDROP_RETRY_MAX_ATTEMPTS', config.retry_max_attempts)
        )

        # Storage
        download_dir = os.getenv('PEERDROP_DOWNLOAD_DIR')
        if download_dir:
            config.download_dir = Path(download_dir)

        # Logging
        config.log_level = os.getenv('PEERDROP_LOG_LEVEL', config.log_level)

        return config

    @classmethod
    def from_file(cls, path: Path) -> 'Config':
        """Load configuration from a JSON file."""
        if not path.exists():
            return cls()

        with open(path) as f:
            data = json.load(f)

        config = cls()

        for key in ['signaling_url', 'api_host', 'api_port', 'code_ttl',
                    'relay_host', 'relay_port', 'prefer_direct',
                    'negotiation_timeout', 'negotiation_attempts',
                    'direct_chunk_size', 'relay_chunk_size', 'min_chunk_size',
                    'max_chunks', 'retry_max_attempts', 'retry_base_delay',
                    'retry_max_delay', 'connect_timeout', 'ack_timeout',
                    'log_level']:
            if key in data:
                setattr(config, key, data[key])

        if 'ice_servers' in data:
            config.ice_servers = list(data['ice_servers'])

        if 'download_dir' in data:
            config.download_dir = Path(data['download_dir'])

        return config

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'signaling_url': self.signaling_url,
            'api_host': self.api_host,
            'api_port': self.api_port,
            'code_ttl': self.code_ttl,
            'relay_host': self.relay_host,
            'relay_port': self.relay_port,
            'prefer_direct': self.prefer_direct,
            'ice_servers': list(self.ice_servers),
            'negotiation_timeout': self.negotiation_timeout,
            'negotiation_attempts': self.negotiation_attempts,
            'direct_chunk_size': self.direct_chunk_size,
            'relay_chunk_size': self.relay_chunk_size,
            'min_chunk_size': self.min_chunk_size,
            'max_chunks': self.max_chunks,
            'retry_max_attempts': self.retry_max_attempts,
            'retry_base_delay': self.retry_base_delay,
            'retry_max_delay': self.retry_max_delay,
            'connect_timeout': self.connect_timeout,
            'ack_timeout': self.ack_timeout,
            'download_dir': str(self.download_dir),
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
    for key in ['signaling_url', 'api_host', 'api_port', 'code_ttl',
                'relay_host', 'relay_port', 'prefer_direct', 'ice_servers',
                'negotiation_timeout', 'negotiation_attempts',
                'retry_max_attempts', 'download_dir', 'log_level']:
        env_val = getattr(env_config, key)
        if env_val != getattr(defaults, key):
            setattr(config, key, env_val)

    return config


# Example config file template
EXAMPLE_CONFIG = """
{
  "signaling_url": "ws://signal.example.org:8080/ws",
  "relay_host": "signal.example.org",
  "relay_port": 8470,
  "prefer_direct": true,
  "ice_servers": ["stun:stun.l.google.com:19302"],
  "negotiation_timeout": 10.0,
  "relay_chunk_size": 262144,
  "download_dir": "./downloads",
  "log_level": "INFO"
}
"""
