#!/usr/bin/env python3
"""
Configuration management for the IMAP sync engine.
"""

import os
import yaml
from typing import Dict, Any

from models import ConnectionConfig, SyncOptions


CONNECTION_FIELDS = ['host', 'port', 'username', 'password']

SETTINGS_FIELDS = [
    'batch_size',
    'max_retries',
    'retry_delay_ms',
    'max_mailboxes',
    'max_messages_per_mailbox',
    'max_message_size_bytes',
    'skip_existing',
    'dry_run',
]


class ConfigManager:
    """Handles configuration loading and validation."""

    def __init__(self, config_file: str = "config.yaml"):
        self.config_file = config_file
        self.config = self.load_config()

    def load_config(self) -> Dict[str, Any]:
        """Load configuration from YAML file."""
        try:
            with open(self.config_file, 'r') as file:
                config = yaml.safe_load(file)
        except FileNotFoundError:
            raise FileNotFoundError(f"Configuration file '{self.config_file}' not found")
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in configuration file: {e}")
        self.validate_config(config)
        return config

    def validate_config(self, config: Dict[str, Any]) -> None:
        """Validate configuration structure."""
        if not isinstance(config, dict):
            raise ValueError("Configuration file must contain a mapping")

        required_sections = ['source', 'destination', 'settings']
        for section in required_sections:
            if section not in config:
                raise ValueError(f"Missing required configuration section: {section}")

        for section in ['source', 'destination']:
            account = config[section] or {}
            for field in CONNECTION_FIELDS:
                if field == 'password' and account.get('password_env'):
                    continue
                if field not in account:
                    raise ValueError(f"Missing required {section} field: {field}")

        settings = config['settings'] or {}
        unknown = set(settings) - set(SETTINGS_FIELDS) - {'progress_file'}
        if unknown:
            raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")

    def connection_config(self, section: str) -> ConnectionConfig:
        """Build the ConnectionConfig for 'source' or 'destination'."""
        account = self.config[section]
        password = account.get('password')
        if account.get('password_env'):
            password = os.environ.get(account['password_env'])
            if not password:
                raise ValueError(f"Environment variable {account['password_env']} for {section} password is not set")

        kwargs = {}
        for key in ('connect_timeout', 'socket_timeout'):
            if key in account:
                kwargs[key] = float(account[key])

        return ConnectionConfig(
            host=account['host'],
            port=int(account['port']),
            username=account['username'],
            password=password,
            secure=bool(account.get('secure', True)),
            tls_verify=bool(account.get('tls_verify', True)),
            **kwargs
        )

    def sync_options(self, **overrides) -> SyncOptions:
        """Build SyncOptions from the settings section."""
        settings = self.config.get('settings') or {}
        kwargs = {key: value for key, value in settings.items() if key in SETTINGS_FIELDS}
        kwargs.update({key: value for key, value in overrides.items() if value is not None})
        return SyncOptions(**kwargs)

    @property
    def progress_file(self):
        return (self.config.get('settings') or {}).get('progress_file')
