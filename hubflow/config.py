from __future__ import annotations

import os
from typing import List, Literal, Optional

import yaml
from pydantic import BaseModel, Field


class EngineConfig(BaseModel):
    """Runtime limits and defaults for the workflow engine."""

    max_concurrent_workflows: int = Field(default=5, ge=1)
    step_timeout_ms: int = Field(default=30000, ge=0)
    max_step_retries: int = Field(default=3, ge=0)
    retry_delay_ms: int = Field(default=1000, ge=0)
    retry_backoff: Literal["fixed", "exponential"] = "fixed"
    persist_workflow_state: bool = True
    recover_on_start: bool = False
    completed_retention_days: int = Field(default=30, ge=0)
    log_level: str = "INFO"


class HubflowConfig(BaseModel):
    """Top-level configuration model."""

    engine: EngineConfig = EngineConfig()
    database_url: Optional[str] = None
    load_default_workflows: bool = True
    catalog_paths: List[str] = Field(default_factory=list)


def load_config(path: Optional[str] = None) -> HubflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to HUBFLOW_CONFIG env
            variable or 'hubflow.yaml' in the current directory.
    """

    config_path = path or os.getenv("HUBFLOW_CONFIG", "hubflow.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = HubflowConfig(**data)
    else:
        config = HubflowConfig()

    env_db_url = os.getenv("HUBFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
