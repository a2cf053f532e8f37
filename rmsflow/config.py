from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///rmsflow.db"


class DatabaseConfig(BaseModel):
    """Backing store connection settings."""

    url: str = DEFAULT_DATABASE_URL
    echo: bool = False


class PagingConfig(BaseModel):
    """Page size limits applied by the paged query engine."""

    default_page_size: int = 10
    max_page_size: int = 100


class WorkflowConfig(BaseModel):
    """Maker-checker settings."""

    allow_self_authorization: bool = False
    auth_level: int = 1
    remarks_max_length: int = 200


class NotifierConfig(BaseModel):
    """Downstream notification settings."""

    backend: Literal["none", "inmemory", "http"] = "none"
    base_url: Optional[str] = None
    timeout_seconds: float = 30.0


class RmsFlowConfig(BaseModel):
    """Top-level configuration model."""

    database: DatabaseConfig = DatabaseConfig()
    paging: PagingConfig = PagingConfig()
    workflow: WorkflowConfig = WorkflowConfig()
    notifier: NotifierConfig = NotifierConfig()
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> RmsFlowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to RMSFLOW_CONFIG env
            variable or 'rmsflow.yaml' in the current directory.
    """

    config_path = path or os.getenv("RMSFLOW_CONFIG", "rmsflow.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = RmsFlowConfig(**data)
    else:
        config = RmsFlowConfig()

    env_db_url = os.getenv("RMSFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database.url = env_db_url
    return config
