"""
Configuration loading for the Reconciliation Engine.

Reads the engine YAML document (resources, mappings, policies and tasks)
and serves it read-only to the rest of the engine.
"""

import json
import logging
import threading
from pathlib import Path
from typing import Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from ..exceptions import ConfigurationError
from ..models import MASTER_DOMAIN, ExternalResource, PullTask, PushTask
from .policy_enforcer import AccountPolicySpec, PasswordPolicySpec

logger = logging.getLogger(__name__)


class EngineConfig(BaseModel):
    """Root of the engine configuration document."""
    domain: str = MASTER_DOMAIN
    resources: List[ExternalResource] = Field(default_factory=list)
    account_policies: Dict[str, AccountPolicySpec] = Field(default_factory=dict)
    password_policies: Dict[str, PasswordPolicySpec] = Field(default_factory=dict)
    pull_tasks: List[PullTask] = Field(default_factory=list)
    push_tasks: List[PushTask] = Field(default_factory=list)
    interrupt_max_retries: int = Field(3, ge=0)
    report_dir: str = "reports"
    store_path: Optional[str] = None
    sync_token_path: Optional[str] = None

    @model_validator(mode="after")
    def check_references(self) -> "EngineConfig":
        resource_keys = [r.key for r in self.resources]
        duplicates = {k for k in resource_keys if resource_keys.count(k) > 1}
        if duplicates:
            raise ValueError(f"Duplicate resource keys: {sorted(duplicates)}")

        for resource in self.resources:
            if resource.account_policy and resource.account_policy not in self.account_policies:
                raise ValueError(f"Resource {resource.key}: unknown account policy '{resource.account_policy}'")
            if resource.password_policy and resource.password_policy not in self.password_policies:
                raise ValueError(f"Resource {resource.key}: unknown password policy '{resource.password_policy}'")

        task_keys = [t.key for t in self.pull_tasks] + [t.key for t in self.push_tasks]
        duplicates = {k for k in task_keys if task_keys.count(k) > 1}
        if duplicates:
            raise ValueError(f"Duplicate task keys: {sorted(duplicates)}")
        for task in list(self.pull_tasks) + list(self.push_tasks):
            if task.resource not in resource_keys:
                raise ValueError(f"Task {task.key}: unknown resource '{task.resource}'")
        for task in self.pull_tasks:
            if task.recon_filter is not None and not task.recon_filter.is_valid():
                raise ValueError(f"Task {task.key}: invalid recon_filter")
        for task in self.push_tasks:
            invalid = sorted(t for t, cond in task.filters.items() if not cond.is_valid())
            if invalid:
                raise ValueError(f"Task {task.key}: invalid filters for {invalid}")
        return self


def load_config(config_path: Union[str, Path]) -> EngineConfig:
    """
    Load and validate an engine configuration file.

    Raises:
        ConfigurationError: if the file is missing, not YAML, or invalid
    """
    path = Path(config_path)
    if not path.exists():
        raise ConfigurationError(f"Configuration file not found: {path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

    try:
        config = EngineConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration in {path}: {e}") from e

    logger.info(f"Loaded configuration from {path}: {len(config.resources)} resources, "
                f"{len(config.pull_tasks)} pull tasks, {len(config.push_tasks)} push tasks")
    return config


class ConfigStore:
    """
    Read-only access to resources, policies and tasks.

    Sync tokens are the only mutable state: incremental pulls record the
    last processed token per resource and any type, optionally persisted to
    ``sync_token_path``.
    """

    def __init__(self, config: Optional[EngineConfig] = None,
                 config_path: Optional[Union[str, Path]] = None):
        """
        Initialize the configuration store.

        Args:
            config: Already-built configuration
            config_path: YAML file to load when config is not given
        """
        if config is None and config_path is None:
            raise ConfigurationError("Either config or config_path is required")

        self.config_path = Path(config_path) if config_path else None
        self.config = config if config is not None else load_config(self.config_path)
        self._sync_tokens: Dict[str, Optional[str]] = {}
        self._lock = threading.Lock()
        self._load_sync_tokens()

    @property
    def domain(self) -> str:
        return self.config.domain

    def reload_config(self) -> None:
        """Reload configuration from disk."""
        if self.config_path is None:
            raise ConfigurationError("Configuration was not loaded from a file")
        self.config = load_config(self.config_path)
        logger.info("Configuration reloaded")

    def list_resources(self) -> List[ExternalResource]:
        return list(self.config.resources)

    def get_resource(self, key: str) -> ExternalResource:
        for resource in self.config.resources:
            if resource.key == key:
                return resource
        raise ConfigurationError(f"Unknown resource: {key}")

    def get_account_policy(self, key: Optional[str]) -> Optional[AccountPolicySpec]:
        if key is None:
            return None
        try:
            return self.config.account_policies[key]
        except KeyError:
            raise ConfigurationError(f"Unknown account policy: {key}") from None

    def get_password_policy(self, key: Optional[str]) -> Optional[PasswordPolicySpec]:
        if key is None:
            return None
        try:
            return self.config.password_policies[key]
        except KeyError:
            raise ConfigurationError(f"Unknown password policy: {key}") from None

    def get_pull_task(self, key: str) -> PullTask:
        for task in self.config.pull_tasks:
            if task.key == key:
                return task
        raise ConfigurationError(f"Unknown pull task: {key}")

    def get_push_task(self, key: str) -> PushTask:
        for task in self.config.push_tasks:
            if task.key == key:
                return task
        raise ConfigurationError(f"Unknown push task: {key}")

    def get_task(self, key: str) -> Union[PullTask, PushTask]:
        try:
            return self.get_pull_task(key)
        except ConfigurationError:
            return self.get_push_task(key)

    def list_tasks(self) -> List[Union[PullTask, PushTask]]:
        return list(self.config.pull_tasks) + list(self.config.push_tasks)

    @staticmethod
    def _token_key(resource_key: str, any_type: str) -> str:
        return f"{resource_key}/{any_type}"

    def get_sync_token(self, resource_key: str, any_type: str) -> Optional[str]:
        with self._lock:
            token_key = self._token_key(resource_key, any_type)
            if token_key in self._sync_tokens:
                return self._sync_tokens[token_key]
        provision = self.get_resource(resource_key).get_provision(any_type)
        return provision.sync_token if provision else None

    def set_sync_token(self, resource_key: str, any_type: str, token: Optional[str]) -> None:
        with self._lock:
            self._sync_tokens[self._token_key(resource_key, any_type)] = token
            self._save_sync_tokens()
        logger.debug(f"Sync token for {resource_key}/{any_type} set to {token}")

    def _load_sync_tokens(self):
        path = self.config.sync_token_path
        if not path or not Path(path).exists():
            return
        with open(path, encoding="utf-8") as f:
            self._sync_tokens = json.load(f)

    def _save_sync_tokens(self):
        path = self.config.sync_token_path
        if not path:
            return
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self._sync_tokens, f, indent=2)
