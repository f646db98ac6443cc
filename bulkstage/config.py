# bulkstage/config.py
"""
Configuration management for database connections.
Supports YAML configuration files with optional password encryption and global settings.
"""

import os
import logging
from pathlib import Path
from textwrap import dedent
from typing import Dict, Any, Optional

from .defaults import settings
from .database import Database, get_params_for_database, register_user_drivers

try:
    import yaml
except ImportError:
    raise ImportError("PyYAML is required. Install with: pip install PyYAML")

try:
    from cryptography.fernet import Fernet
    HAS_CRYPTO = True
except ImportError:
    HAS_CRYPTO = False

try:
    import keyring
    HAS_KEYRING = True
except ImportError:
    HAS_KEYRING = False

logger = logging.getLogger(__name__)

ENCRYPTION_KEY_VAR = 'BULKSTAGE_ENCRYPTION_KEY'
# cursor() keyword arguments a connection entry may set under `cursor:`
CURSOR_SETTINGS = ('batch_size', 'debug')


def _substitute_env(value: Any) -> Any:
    """Resolve a ``${VAR_NAME}`` reference to the environment variable's value."""
    if isinstance(value, str) and value.startswith('${') and value.endswith('}'):
        env_var = value[2:-1]
        resolved = os.environ.get(env_var)
        if resolved is None:
            raise ValueError(f"Environment variable {env_var} not set")
        return resolved
    return value


class ConfigManager:
    """
    Manage bulkstage configuration from YAML files.

    Configuration File Structure
    ----------------------------
    ::

        # bulkstage.yml
        settings:
          default_batch_size: 5000
          default_bulk_timeout: 900
          logging:
            level: DEBUG

        connections:
          warehouse:
            type: postgres
            host: localhost
            database: warehouse
            user: etl
            encrypted_password: gAAAAABh...
            cursor:
              batch_size: 10000

          staging:
            type: sqlite
            database: /data/staging.db

        passwords:
          api_key:
            password: ${API_KEY}

    Configuration Locations
    -----------------------
    1. File specified in config_file parameter
    2. ``./bulkstage.yml`` / ``./bulkstage.yaml``
    3. ``~/.config/bulkstage.yml`` / ``~/.config/bulkstage.yaml``

    Notes
    -----
    * Connections require a 'type' field (postgres, oracle, mysql, sqlserver, sqlite)
    * Encrypted passwords need the BULKSTAGE_ENCRYPTION_KEY environment variable
      or a key stored in the system keyring
    * Passwords can reference environment variables with ${VAR_NAME}
    """

    def __init__(self, config_file: Optional[str] = None):
        """
        Initialize config manager and load configuration.

        Raises
        ------
        FileNotFoundError
            If no config file found in any search location
        ValueError
            If config file is invalid or malformed
        """
        self.config_file = self._find_config_file(config_file)
        self.config = self._load_config()
        self._fernet = None

        self._apply_settings()

    def _find_config_file(self, config_file: Optional[str]) -> Path:
        """Find the configuration file."""
        if config_file:
            path = Path(config_file)
            if not path.exists():
                raise FileNotFoundError(f"Config file not found: {config_file}")
            return path

        candidates = [
            Path("bulkstage.yml"),
            Path("bulkstage.yaml"),
            Path.home() / ".config" / "bulkstage.yml",
            Path.home() / ".config" / "bulkstage.yaml"
        ]

        for candidate in candidates:
            if candidate.exists():
                return candidate

        raise FileNotFoundError(
            "No config file found. Looked in: " +
            ", ".join(str(c) for c in candidates)
        )

    def _load_config(self) -> Dict[str, Any]:
        """Load and validate configuration file."""
        try:
            with open(self.config_file, 'r') as f:
                config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Failed to load config file {self.config_file}: {e}")

        if not isinstance(config, dict):
            raise ValueError(f"Invalid config file {self.config_file}.")

        for name, conn in config.get('connections', {}).items():
            if not isinstance(conn, dict) or ('type' not in conn and 'driver' not in conn):
                raise ValueError(f"Invalid connection '{name}' in {self.config_file}: 'type' or 'driver' is required")

        if not isinstance(config.get('passwords', {}), dict):
            raise ValueError(f"Invalid config file {self.config_file}: 'passwords' must be a dictionary")
        for name, password_data in config.get('passwords', {}).items():
            if not isinstance(password_data, dict) or \
                    ('password' not in password_data and 'encrypted_password' not in password_data):
                raise ValueError(
                    f"Invalid password entry '{name}' in {self.config_file}: 'password' or 'encrypted_password' is required")

        if not isinstance(config.get('settings', {}), dict):
            raise ValueError(f"Invalid config file {self.config_file}: 'settings' must be a dictionary")

        logger.info(f"Loaded config from {self.config_file}")
        return config

    def _apply_settings(self) -> None:
        """Merge config settings into the global settings and register custom drivers."""
        for key, value in self.config.get('settings', {}).items():
            if isinstance(value, dict) and isinstance(settings.get(key), dict):
                settings[key] = {**settings[key], **value}
            else:
                settings[key] = value

        drivers = self.config.get('drivers')
        if drivers:
            register_user_drivers(drivers)
            logger.info(f"Registered custom drivers: {', '.join(drivers)}")

    def get_setting(self, key: str, default: Any = None) -> Any:
        """
        Get a setting value from the config.

        Args:
            key: Setting key (supports dot notation like 'logging.level')
            default: Default value if key not found

        Example:
            timeout = config.get_setting('default_bulk_timeout', 600)
        """
        value = self.config.get('settings', {})
        for k in key.split('.'):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default
        return value

    def _get_encryption_key(self) -> bytes:
        """Get encryption key from environment variable or keyring."""
        # environment variable takes precedence
        key_str = os.environ.get(ENCRYPTION_KEY_VAR)
        if key_str:
            logger.debug(f"Using {ENCRYPTION_KEY_VAR} from environment")
            return key_str.encode()

        if not HAS_CRYPTO:
            raise ValueError("Encryption not available. Install cryptography package to enable encryption.")

        if HAS_KEYRING:
            try:
                key_str = keyring.get_password('bulkstage', 'encryption_key')
            except Exception as e:
                logger.warning(f"Keyring access failed: {e}")
                key_str = None
            if key_str:
                logger.debug("Using encryption key from keyring")
                return key_str.encode()

        raise ValueError(dedent(f"""\
            Encryption key not found in environment or keyring.
            Generate one with bulkstage.config.generate_encryption_key() and store it
            in the {ENCRYPTION_KEY_VAR} environment variable."""))

    def _get_fernet(self) -> 'Fernet':
        """Get or create Fernet instance for encryption/decryption."""
        if not HAS_CRYPTO:
            raise ValueError("Encryption not available. Install cryptography package to enable encryption.")
        if self._fernet is None:
            self._fernet = Fernet(self._get_encryption_key())
        return self._fernet

    def decrypt_password(self, encrypted_password: str) -> str:
        """Decrypt an encrypted password."""
        try:
            return self._get_fernet().decrypt(encrypted_password.encode()).decode()
        except Exception as e:
            raise ValueError(f"Failed to decrypt password: {e}")

    def encrypt_password(self, password: str) -> str:
        """Encrypt a password for storage."""
        try:
            return self._get_fernet().encrypt(password.encode()).decode()
        except Exception as e:
            raise ValueError(f"Failed to encrypt password: {e}")

    def get_connection_config(self, name: str) -> Dict[str, Any]:
        """Get configuration for a named connection with its password resolved."""
        connections = self.config.get('connections', {})

        if name not in connections:
            available = list(connections.keys())
            raise ValueError(
                f"Connection '{name}' not found in config. "
                f"Available connections: {available}"
            )

        config = connections[name].copy()

        if 'encrypted_password' in config:
            config['password'] = self.decrypt_password(config.pop('encrypted_password'))

        if 'password' in config:
            config['password'] = _substitute_env(config['password'])

        return config

    def list_connections(self) -> list:
        """List all available connection names."""
        return list(self.config.get('connections', {}).keys())

    def get_password(self, name: str) -> str:
        """
        Get a stored password by name.

        Raises:
            ValueError: If password not found or decryption fails
        """
        passwords = self.config.get('passwords', {})

        if name not in passwords:
            available = list(passwords.keys())
            raise ValueError(
                f"Password '{name}' not found in config. "
                f"Available passwords: {available}"
            )

        entry = passwords[name]
        if 'encrypted_password' in entry:
            return self.decrypt_password(entry['encrypted_password'])
        return _substitute_env(entry['password'])


# Global config manager instance
_config_manager: Optional[ConfigManager] = None


def _get_manager(config_file: Optional[str] = None) -> ConfigManager:
    global _config_manager

    if config_file:
        return ConfigManager(config_file)
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager


def generate_encryption_key() -> str:
    """
    Generate a random encryption key.

    Store the returned key in the BULKSTAGE_ENCRYPTION_KEY environment variable
    or in the system keyring under ('bulkstage', 'encryption_key').
    """
    if not HAS_CRYPTO:
        raise ValueError("Encryption not available. Install cryptography package to enable encryption.")
    return Fernet.generate_key().decode()


def set_config_file(config_file: Optional[str]) -> None:
    """Set the configuration file to use globally. ``None`` resets to the default search."""
    global _config_manager
    _config_manager = ConfigManager(config_file) if config_file else None


def connect(name: str, password: str = None, config_file: Optional[str] = None) -> Database:
    """
    Connect to a named database from configuration.

    This is the default connection provider for bulk insert operations:
    the connection name an operation is configured with is resolved here.

    Example:
        with connect('warehouse') as db:
            cursor = db.cursor()
    """
    config = _get_manager(config_file).get_connection_config(name)
    if password:
        config['password'] = password
    info = {key: val for key, val in config.items() if key != 'password'}
    logger.debug(f"Connecting to database {name} with config: {info}")

    db_type = config.pop('type', None) or config.pop('database_type', 'postgres')
    driver = config.pop('driver', None)
    cursor_settings = config.pop('cursor', None)
    if cursor_settings is not None:
        unknown = set(cursor_settings.keys()) - set(CURSOR_SETTINGS)
        if unknown:
            logger.warning(f"Unknown cursor settings (ignored): {unknown}")
        cursor_settings = {k: v for k, v in cursor_settings.items() if k in CURSOR_SETTINGS}

    # remove any params that are not allowed for the database type
    allowed_params = get_params_for_database(db_type)
    config = {key: val for key, val in config.items() if key in allowed_params}

    db = Database.create(db_type, driver=driver, cursor_settings=cursor_settings, **config)
    db.name = name
    return db


def get_password(name: str, config_file: Optional[str] = None) -> str:
    """Get a stored password from configuration."""
    return _get_manager(config_file).get_password(name)


def get_setting(key: str, default: Any = None, config_file: Optional[str] = None) -> Any:
    """
    Get a setting value from configuration.

    Example:
        timeout = get_setting('default_bulk_timeout', 600)
        level = get_setting('logging.level', 'INFO')
    """
    return _get_manager(config_file).get_setting(key, default)
