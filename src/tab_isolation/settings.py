"""Validated settings loaded from ``config/settings.yaml``.

Example::

    excluded_domains:
      - github.com
    rule_priority: 1
    storage:
      backend: vault
      vault:
        address: http://127.0.0.1:8200
        mount: secret
        path_prefix: tab-isolation/sessions

The Vault token is never read from the file; it comes from ``VAULT_TOKEN``.
``VAULT_ADDR`` overrides ``storage.vault.address`` when set.
"""

from __future__ import annotations

import logging
import os
import pathlib
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from tab_isolation.policy.exclusion import ExclusionPolicy, normalize_domain

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_PATH = pathlib.Path(__file__).resolve().parents[2] / "config" / "settings.yaml"


class SettingsError(Exception):
    """Raised when the settings file is missing or invalid."""


class VaultStorageSettings(BaseModel):
    address: str = "http://127.0.0.1:8200"
    mount: str = "secret"
    path_prefix: str = "tab-isolation/sessions"

    @field_validator("path_prefix")
    @classmethod
    def strip_slashes(cls, v: str) -> str:
        v = v.strip("/")
        if not v:
            raise ValueError("path_prefix cannot be empty")
        return v


class StorageSettings(BaseModel):
    backend: Literal["memory", "vault"] = "memory"
    vault: VaultStorageSettings = Field(default_factory=VaultStorageSettings)


class IsolationSettings(BaseModel):
    """Top-level settings for the isolation engine."""

    excluded_domains: list[str] = Field(default_factory=lambda: ["github.com"])
    rule_priority: int = Field(default=1, ge=1)
    storage: StorageSettings = Field(default_factory=StorageSettings)

    @field_validator("excluded_domains")
    @classmethod
    def normalize_domains(cls, v: list[str]) -> list[str]:
        """Lower-case entries and drop empty ones and leading dots."""
        return [normalize_domain(d) for d in v if d and d.strip()]

    def exclusion_policy(self) -> ExclusionPolicy:
        return ExclusionPolicy.from_domains(self.excluded_domains)

    @classmethod
    def from_mapping(cls, data: dict[str, Any] | None) -> IsolationSettings:
        try:
            settings = cls.model_validate(data or {})
        except ValidationError as exc:
            raise SettingsError(f"Invalid settings: {exc}") from exc
        env_addr = os.environ.get("VAULT_ADDR")
        if env_addr:
            settings.storage.vault.address = env_addr
        return settings


def load_settings(path: str | pathlib.Path | None = None) -> IsolationSettings:
    """Read and validate the settings file at *path*.

    Raises ``SettingsError`` if the file does not exist, is not a YAML
    mapping, or fails validation.
    """
    settings_path = pathlib.Path(path) if path is not None else DEFAULT_SETTINGS_PATH
    if not settings_path.exists():
        raise SettingsError(f"Settings file not found: {settings_path}")
    with open(settings_path) as fh:
        try:
            data = yaml.safe_load(fh)
        except yaml.YAMLError as exc:
            raise SettingsError(f"Settings file is not valid YAML: {exc}") from exc
    if data is not None and not isinstance(data, dict):
        raise SettingsError("Settings file must contain a mapping at the top level")
    settings = IsolationSettings.from_mapping(data)
    logger.debug(
        "Loaded settings from %s: backend=%s, excluded=%s",
        settings_path,
        settings.storage.backend,
        settings.excluded_domains,
    )
    return settings
