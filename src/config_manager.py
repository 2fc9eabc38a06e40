#!/usr/bin/env python3
"""
Configuration Manager for SFC Stake Watcher

Supports multiple chain configurations with:
1. Environment variable substitution (${VAR} patterns)
2. Configuration validation
3. Named profiles selected by ACTIVE_CONFIG or the --config flag
"""

import os
import json
import re
from typing import Dict, Any, List, Optional
from pathlib import Path

from dotenv import load_dotenv

# look for .env file in the repository root
load_dotenv(Path(__file__).parent.parent / '.env')


class ConfigError(ValueError):
    """Raised when the configuration is missing or invalid"""
    pass


def _is_url(value: Any, schemes: tuple) -> bool:
    return isinstance(value, str) and value.startswith(schemes)


def _is_address(value: Any) -> bool:
    return isinstance(value, str) and value.startswith('0x') and len(value) == 42


class ConfigManager:
    """Configuration manager supporting multiple chain profiles"""

    THRESHOLD_FIELDS = ('min_staking_amount', 'min_claim_amount', 'min_transfer_amount')

    def __init__(self, config_file: Optional[str] = None, config_name_override: Optional[str] = None):
        self.config_file = config_file or os.getenv('STAKEWATCH_CONFIG_FILE', "config.json")
        self._config_data = None
        self._active_config_name = None
        self._active_config = None
        self._config_name_override = config_name_override
        self._load_config()
        self._load_active_config()

    def _load_config(self):
        """Load configuration from JSON file"""
        config_path = Path(__file__).parent.parent / self.config_file

        try:
            with open(config_path, 'r') as f:
                content = f.read()
                # substitute environment variables
                content = self._substitute_env_vars(content)
                self._config_data = json.loads(content)
        except FileNotFoundError:
            raise ConfigError(f"Config file {config_path} not found")
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in config file {config_path}: {e}")

    def _substitute_env_vars(self, content: str) -> str:
        """Substitute ${VAR} patterns with environment variables"""
        def replace_var(match):
            var_name = match.group(1)
            env_value = os.getenv(var_name)
            if env_value is None:
                raise ConfigError(f"Environment variable {var_name} is not set")
            return env_value

        # pattern to match ${VAR_NAME}
        pattern = r'\$\{([A-Z_][A-Z0-9_]*)\}'
        return re.sub(pattern, replace_var, content)

    def _load_active_config(self):
        """Load the active configuration based on override, ACTIVE_CONFIG env var, or default"""
        if self._config_name_override:
            self._active_config_name = self._config_name_override
        else:
            self._active_config_name = os.getenv('ACTIVE_CONFIG')

        if not self._active_config_name:
            # use the first available config as default
            configs = self.get_available_configs()
            if configs:
                self._active_config_name = list(configs.keys())[0]
            else:
                raise ConfigError("No configurations available and ACTIVE_CONFIG not set")

        if self._active_config_name not in self.get_available_configs():
            available = list(self.get_available_configs().keys())
            raise ConfigError(f"Active config '{self._active_config_name}' not found. Available: {available}")

        self._active_config = self.get_available_configs()[self._active_config_name]

    def get_available_configs(self) -> Dict[str, Any]:
        """Get all available configurations"""
        return self._config_data.get("configs", {})

    def get_active_config_name(self) -> str:
        """Get the name of the active configuration"""
        return self._active_config_name

    def get_active_config(self) -> Dict[str, Any]:
        """Get the active configuration"""
        return self._active_config.copy()

    def list_configs(self) -> Dict[str, str]:
        """List all available configurations with display names"""
        configs = {}
        for name, config in self.get_available_configs().items():
            configs[name] = config.get('display_name', name)
        return configs

    def switch_config(self, config_name: str):
        """Switch to a different configuration"""
        if config_name not in self.get_available_configs():
            available = list(self.get_available_configs().keys())
            raise ConfigError(f"Config '{config_name}' not found. Available: {available}")

        self._config_name_override = config_name
        self._load_active_config()
        return True

    def validate_config(self, config_name: Optional[str] = None) -> Dict[str, Any]:
        """Validate a configuration and return validation results"""
        config = self.get_available_configs().get(config_name or self._active_config_name)

        if not config:
            return {"valid": False, "errors": ["Configuration not found"], "warnings": []}

        errors = []
        warnings = []

        # RPC endpoints may be given as a single url or a preference-ordered list
        for field, schemes in (
            ('rpc_url', ('http://', 'https://')),
            ('ws_rpc_url', ('ws://', 'wss://')),
        ):
            urls = config.get(f"{field}s")
            url = config.get(field)
            if urls is not None:
                if not isinstance(urls, list) or not urls or not all(_is_url(u, schemes) for u in urls):
                    errors.append(f"{field}s must be a non-empty list of {'/'.join(schemes)} URLs")
            elif url is not None:
                if not _is_url(url, schemes):
                    errors.append(f"{field} must be a valid {'/'.join(schemes)} URL")
            else:
                errors.append(f"Missing required field: {field} or {field}s")

        graphql_urls = config.get('graphql_urls') or ([config['graphql_url']] if config.get('graphql_url') else [])
        if not graphql_urls:
            warnings.append("No graphql_url configured; validators will be synced from node logs only")
        elif not all(_is_url(u, ('http://', 'https://')) for u in graphql_urls):
            errors.append("graphql_url(s) must be HTTP/HTTPS URLs")

        if not _is_address(config.get('sfc_contract')):
            errors.append("sfc_contract must be a valid address (0x...)")

        if not _is_url(config.get('explorer_url'), ('http://', 'https://')):
            errors.append("explorer_url must be a valid HTTP/HTTPS URL")

        for field in self.THRESHOLD_FIELDS:
            value = config.get(field)
            if value is None:
                errors.append(f"Missing required field: {field}")
            elif isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                errors.append(f"{field} must be a positive number")

        telegram = config.get('telegram') or {}
        webhook = config.get('discord_webhook_url')
        if not telegram.get('token') and not webhook:
            warnings.append("No telegram or discord channel configured; relying on stored channels")
        if webhook and not webhook.startswith('https://discord.com/api/webhooks/'):
            warnings.append("discord_webhook_url should be a Discord webhook URL")

        return {
            "valid": len(errors) == 0,
            "errors": errors,
            "warnings": warnings,
            "config_name": config_name or self._active_config_name
        }

    # configuration getters using active config

    def _get_urls(self, field: str) -> List[str]:
        urls = self._active_config.get(f"{field}s")
        if isinstance(urls, list) and urls:
            return urls
        url = self._active_config.get(field)
        if isinstance(url, str) and url:
            return [url]
        raise ConfigError(f"No {field}(s) configured")

    def get_rpc_urls(self) -> List[str]:
        """Get list of HTTP RPC URLs in preference order"""
        return self._get_urls('rpc_url')

    def get_ws_rpc_urls(self) -> List[str]:
        """Get list of WebSocket RPC URLs in preference order"""
        return self._get_urls('ws_rpc_url')

    def get_graphql_urls(self) -> List[str]:
        """Get list of GraphQL API URLs (may be empty)"""
        try:
            return self._get_urls('graphql_url')
        except ConfigError:
            return []

    def get_sfc_contract(self) -> str:
        """Get staking contract address"""
        address = self._active_config.get('sfc_contract')
        if not _is_address(address):
            raise ConfigError("sfc_contract must be a valid address (0x...)")
        return address

    def get_explorer_url(self) -> str:
        """Get block explorer base URL"""
        url = self._active_config.get('explorer_url')
        if not _is_url(url, ('http://', 'https://')):
            raise ConfigError("explorer_url must be a valid HTTP/HTTPS URL")
        return url.rstrip('/')

    def _get_threshold(self, field: str) -> float:
        value = self._active_config.get(field)
        if value is None:
            raise ConfigError(f"Missing required field: {field}")
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            raise ConfigError(f"{field} must be a positive number, got {value!r}")
        return float(value)

    def get_min_staking_amount(self) -> float:
        """Minimum delegate/undelegate/lockup amount worth notifying"""
        return self._get_threshold('min_staking_amount')

    def get_min_claim_amount(self) -> float:
        """Minimum unlocked reward claim worth notifying"""
        return self._get_threshold('min_claim_amount')

    def get_min_transfer_amount(self) -> float:
        """Minimum plain transfer amount worth notifying"""
        return self._get_threshold('min_transfer_amount')

    def get_rpc_preference_reset_minutes(self) -> int:
        """Get preference reset interval (minutes) for RPC selection (default 60)"""
        try:
            return int(self._config_data.get('rpc_preference_reset_minutes', 60))
        except (TypeError, ValueError):
            return 60

    def get_telegram_config(self) -> Dict[str, Any]:
        """Get default telegram channel settings (token, chat_id)"""
        telegram = self._active_config.get('telegram') or {}
        token = telegram.get('token')
        chat_id = telegram.get('chat_id')
        if not token:
            return {}
        try:
            chat_id = int(chat_id)
        except (TypeError, ValueError):
            raise ConfigError(f"telegram.chat_id must be an integer, got {chat_id!r}")
        return {'token': token, 'chat_id': chat_id}

    def get_discord_webhook_url(self) -> Optional[str]:
        """Get Discord webhook URL"""
        return self._active_config.get('discord_webhook_url') or None

    def get_contact_book(self) -> Dict[str, str]:
        """Known addresses (lowercased) mapped to display names"""
        result = {}
        for contact in self._active_config.get('contact_book', []):
            address = contact.get('address')
            if address:
                result[address.lower()] = contact.get('name', '')
        return result

    def get_validator_book(self) -> Dict[int, str]:
        """Known validator ids mapped to display names"""
        result = {}
        for entry in self._active_config.get('validator_book', []):
            try:
                result[int(entry['id'])] = entry.get('name', '')
            except (KeyError, TypeError, ValueError):
                continue
        return result

    def get_display_name(self) -> str:
        """Get display name for active configuration"""
        return self._active_config.get('display_name', self._active_config_name)

    def get_database_path(self) -> str:
        """Get database path for active configuration"""
        return self._active_config.get('database_path', f"databases/{self._active_config_name}.duckdb")

    def create_kv_store(self):
        """Create a key-value store instance for the active configuration"""
        from kv_store import KeyValueStore

        return KeyValueStore(database_path=self.get_database_path())

    # watch and polling settings

    def get_watch_config(self) -> Dict[str, Any]:
        """Get watch supervisor configuration"""
        return self._config_data.get("watch", {})

    def get_backoff_seconds(self) -> float:
        """Fixed delay before resubscribing after a subscription failure"""
        return float(self.get_watch_config().get('backoff_seconds', 1))

    def get_shift_blocks(self) -> int:
        """Lag applied to new heads before sweeping a block for transfers"""
        return int(self.get_watch_config().get('shift_blocks', 5))

    def get_block_range(self) -> int:
        """Window size used to chunk historical log queries"""
        return int(self._config_data.get("sfc", {}).get('block_range', 50000))


# Global configuration manager instance
_config_manager_instance = None

def get_config_manager() -> ConfigManager:
    """
    Get the global configuration manager instance (singleton pattern)
    """
    global _config_manager_instance

    if _config_manager_instance is None:
        _config_manager_instance = ConfigManager()

    return _config_manager_instance

def reset_config_manager_instance(config_name_override: Optional[str] = None, config_file: Optional[str] = None):
    """
    Reset the global configuration manager instance with optional config override
    """
    global _config_manager_instance
    _config_manager_instance = ConfigManager(config_file=config_file, config_name_override=config_name_override)
    return _config_manager_instance
