"""Configuration management for proxrestore."""

import os
import yaml
from typing import Dict, Any, List, Optional

from ..utils.paths import build_cloud_remote_path


DEFAULTS = {
    'BACKUP_PATH': '/opt/proxsave/backup',
    'SECONDARY_ENABLED': False,
    'SECONDARY_PATH': '',
    'CLOUD_ENABLED': False,
    'CLOUD_REMOTE': '',
    'CLOUD_REMOTE_PATH': '',
    'CLOUD_BACKEND': 'rclone',
    'RCLONE_TIMEOUT_CONNECTION': 30,
    'S3_ENDPOINT_URL': '',
    'S3_ACCESS_KEY_ID': '',
    'S3_SECRET_ACCESS_KEY': '',
    'BASE_DIR': '/opt/proxsave',
    'TEMP_ROOT': '/tmp/proxsave',
    'TEMP_REGISTRY_PATH': '/var/run/proxsave/temp-dirs.json',
    'TEMP_DIR_TTL_HOURS': 24,
    'NETWORK_ROLLBACK_TIMEOUT': 180,
    'DRY_RUN': False,
    'PRESERVE_RESTORE_STAGING': False,
}

TRUE_VALUES = ('1', 'true', 'yes', 'on')


def parse_bool(value: Any) -> bool:
    """Interpret a config value as a boolean."""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in TRUE_VALUES


class Config:
    """Configuration manager for proxrestore.

    Values come from the environment first, then from the YAML file named by
    PROXRESTORE_CONFIG (or the ``config_path`` argument), then from defaults.
    """

    def __init__(self, config_path: Optional[str] = None, environ: Optional[Dict[str, str]] = None,
                 overrides: Optional[Dict[str, Any]] = None):
        self._environ = os.environ if environ is None else environ
        self.config_path = config_path or self._environ.get('PROXRESTORE_CONFIG')
        self._file_config = None
        self._overrides = dict(overrides or {})

        self.backup_path = self._get_str('BACKUP_PATH')
        self.secondary_enabled = parse_bool(self._get('SECONDARY_ENABLED'))
        self.secondary_path = self._get_str('SECONDARY_PATH')
        self.cloud_enabled = parse_bool(self._get('CLOUD_ENABLED'))
        self.cloud_remote = self._get_str('CLOUD_REMOTE')
        self.cloud_remote_path = self._get_str('CLOUD_REMOTE_PATH')
        self.cloud_backend = self._get_str('CLOUD_BACKEND').lower() or 'rclone'
        self.rclone_timeout = self._get_int('RCLONE_TIMEOUT_CONNECTION')
        self.s3_endpoint_url = self._get_str('S3_ENDPOINT_URL')
        self.s3_access_key_id = self._get_str('S3_ACCESS_KEY_ID')
        self.s3_secret_access_key = self._get_str('S3_SECRET_ACCESS_KEY')
        self.base_dir = self._get_str('BASE_DIR')
        self.temp_root = self._get_str('TEMP_ROOT')
        self.temp_registry_path = (self._environ.get('PROXMOX_TEMP_REGISTRY_PATH')
                                   or self._get_str('TEMP_REGISTRY_PATH'))
        self.temp_dir_ttl_hours = self._get_int('TEMP_DIR_TTL_HOURS')
        self.network_rollback_timeout = self._get_int('NETWORK_ROLLBACK_TIMEOUT')
        self.dry_run = parse_bool(self._get('DRY_RUN'))
        self.preserve_restore_staging = parse_bool(self._environ.get('PROXSAVE_PRESERVE_RESTORE_STAGING')
                                                   or self._get('PRESERVE_RESTORE_STAGING'))

        self._validate()

    @property
    def file_config(self) -> Dict[str, Any]:
        """Load and cache the YAML configuration file."""
        if self._file_config is None:
            if not self.config_path:
                self._file_config = {}
            else:
                if not os.path.exists(self.config_path):
                    raise FileNotFoundError(f"Config file not found: {self.config_path}")
                with open(self.config_path, 'r') as f:
                    loaded = yaml.safe_load(f)
                if loaded is None:
                    loaded = {}
                if not isinstance(loaded, dict):
                    raise ValueError(f"Config file {self.config_path} must contain a mapping")
                self._file_config = loaded
        return self._file_config

    def _get(self, key: str) -> Any:
        if key in self._overrides:
            return self._overrides[key]
        value = self._environ.get(key)
        if value is not None and value != '':
            return value
        if key in self.file_config:
            return self.file_config[key]
        return DEFAULTS.get(key)

    def _get_str(self, key: str) -> str:
        value = self._get(key)
        return '' if value is None else str(value).strip()

    def _get_int(self, key: str) -> int:
        value = self._get(key)
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ValueError(f"Invalid integer for {key}: {value!r}")

    def _validate(self):
        """Validate settings that depend on each other."""
        if self.cloud_backend not in ('rclone', 's3'):
            raise ValueError(f"Unsupported CLOUD_BACKEND: {self.cloud_backend}")

        if self.cloud_enabled and self.cloud_backend == 's3':
            required = {
                'S3_ENDPOINT_URL': self.s3_endpoint_url,
                'S3_ACCESS_KEY_ID': self.s3_access_key_id,
                'S3_SECRET_ACCESS_KEY': self.s3_secret_access_key,
            }
            missing_vars = [name for name, value in required.items() if not value]
            if missing_vars:
                raise ValueError(f"Missing required environment variables: {', '.join(missing_vars)}")

        if self.rclone_timeout <= 0:
            self.rclone_timeout = DEFAULTS['RCLONE_TIMEOUT_CONNECTION']

    @property
    def cloud_reference(self) -> str:
        """Cloud source reference, or empty when the cloud source is disabled."""
        if not self.cloud_enabled or not self.cloud_remote.strip():
            return ''
        return build_cloud_remote_path(self.cloud_remote, self.cloud_remote_path)

    @property
    def temp_dir_ttl_seconds(self) -> int:
        return max(self.temp_dir_ttl_hours, 0) * 3600

    def as_dict(self) -> Dict[str, Any]:
        """Return non-secret settings for display."""
        hidden: List[str] = ['s3_secret_access_key', 's3_access_key_id']
        return {
            key: value for key, value in vars(self).items()
            if not key.startswith('_') and key not in hidden
        }
