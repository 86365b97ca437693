#!/usr/bin/env python3
"""
VM Disk Mapper Secrets Management
Purpose: Load vCenter and guest credentials from environment variables,
secrets file, cached credential file or interactive prompt
"""

import getpass
import os
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from disk_mapper_console import warn


class SecretsManager:
    """Manage secrets from multiple sources with priority order"""

    def __init__(self, project_dir: Path, cache_file: Optional[Path] = None):
        self.project_dir = project_dir
        self.secrets_file = project_dir / "config" / "vm-disk-mapper-secrets.yaml"
        self.cache_file = Path(cache_file) if cache_file else (
            Path.home() / ".vm-disk-mapper" / "credentials.yaml"
        )
        self._secrets_cache = None

    def get_secret(
        self,
        key: str,
        config_value: Optional[str] = None,
        env_var: Optional[str] = None,
        required: bool = True,
        hidden: bool = True
    ) -> Optional[str]:
        """
        Get secret value with priority order:
        1. Environment variable (if env_var specified)
        2. Secrets file (vm-disk-mapper-secrets.yaml)
        3. Config file value (if config_value provided)
        4. Prompt user (if required=True)

        Args:
            key: Secret key name in secrets file
            config_value: Value from main config file (fallback)
            env_var: Environment variable name to check
            required: If True, will prompt if not found
            hidden: Prompt without echo (passwords)

        Returns:
            Secret value or None if not found and not required
        """
        # Priority 1: Environment variable
        if env_var:
            env_value = os.environ.get(env_var)
            if env_value:
                return env_value

        # Priority 2: Secrets file
        secrets = self._load_secrets_file()
        if secrets and secrets.get(key):
            return secrets[key]

        # Priority 3: Config file value
        if config_value:
            return config_value

        # Priority 4: Prompt user (if required)
        if required:
            prompt = f"Enter {key.replace('_', ' ')}: "
            value = getpass.getpass(prompt) if hidden else input(prompt)
            return value.strip() if not hidden else value

        return None

    def _load_secrets_file(self) -> Optional[Dict[str, Any]]:
        """Load secrets from vm-disk-mapper-secrets.yaml (cached)"""
        if self._secrets_cache is not None:
            return self._secrets_cache

        if not self.secrets_file.exists():
            return None

        try:
            with open(self.secrets_file, 'r', encoding='utf-8') as f:
                self._secrets_cache = yaml.safe_load(f) or {}
            return self._secrets_cache
        except (OSError, yaml.YAMLError) as e:
            warn(f"Failed to load secrets file: {e}")
            return None

    def get_vcenter_credential(self, username: Optional[str] = None) -> Tuple[str, str]:
        """Get vCenter username and password for interactive login"""
        user = self.get_secret(
            key="vcenter_username",
            config_value=username,
            env_var="VMDM_VCENTER_USER",
            required=True,
            hidden=False
        )
        password = self.get_secret(
            key="vcenter_password",
            env_var="VMDM_VCENTER_PASSWORD",
            required=True
        )
        assert user is not None and password is not None  # required=True guarantees non-None
        return user, password

    def get_guest_credential(self) -> Tuple[str, str]:
        """Get the guest OS credential used for every VM in this run"""
        user = self.get_secret(
            key="guest_username",
            env_var="VMDM_GUEST_USER",
            required=True,
            hidden=False
        )
        password = self.get_secret(
            key="guest_password",
            env_var="VMDM_GUEST_PASSWORD",
            required=True
        )
        assert user is not None and password is not None  # required=True guarantees non-None
        return user, password

    def load_cached_credential(self, vcenter: str) -> Optional[Tuple[str, str]]:
        """Return (username, password) saved for vcenter, or None"""
        if not self.cache_file.exists():
            return None

        try:
            with open(self.cache_file, 'r', encoding='utf-8') as f:
                cache = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            warn(f"Failed to read credential cache {self.cache_file}: {e}")
            return None

        entry = cache.get(vcenter.lower()) if isinstance(cache, dict) else None
        if not isinstance(entry, dict) or not entry.get("username") or not entry.get("password"):
            return None
        return entry["username"], entry["password"]

    def save_cached_credential(self, vcenter: str, username: str, password: str) -> Path:
        """Store a credential for vcenter in the cache file (mode 0600)"""
        cache: Dict[str, Any] = {}
        if self.cache_file.exists():
            try:
                with open(self.cache_file, 'r', encoding='utf-8') as f:
                    cache = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError):
                cache = {}

        cache[vcenter.lower()] = {"username": username, "password": password}

        self.cache_file.parent.mkdir(parents=True, exist_ok=True)
        # Never world-readable, not even between create and chmod
        fd = os.open(self.cache_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            yaml.safe_dump(cache, f, default_flow_style=False)
        # O_CREAT mode does not apply to a file that already existed
        os.chmod(self.cache_file, 0o600)
        return self.cache_file
