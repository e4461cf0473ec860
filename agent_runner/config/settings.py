"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置。
优先级（高 → 低）：初始化参数、环境变量、.env、config.yaml、secrets 目录。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from agent_runner.domain.models import ApprovalMode


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("AGENT_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class Settings(BaseSettings):
    """全局配置（使用 Pydantic）。"""

    # ---- Provider 相关配置 ----
    default_provider: str = Field(
        default="openrouter",
        description="默认使用的 Provider 名称",
    )
    default_model: str = Field(
        default="openai/gpt-4o-mini",
        description="默认模型 ID（OpenRouter 模型名）",
    )
    openrouter_api_key: Optional[str] = Field(default=None, description="OpenRouter API 密钥")
    openrouter_base_url: str = Field(
        default="https://openrouter.ai/api/v1",
        description="OpenRouter API 基础URL",
    )
    http_timeout: float = Field(default=60.0, ge=1.0, description="HTTP 超时时间（秒）")

    # ---- Agent 策略 ----
    approval_mode: ApprovalMode = Field(
        default="always_ask",
        description="工具调用审批模式：always_ask / per_thread / auto_approve",
    )
    max_tool_calls_per_run: int = Field(
        default=10,
        ge=0,
        le=100,
        description="单次 run 内允许执行的工具调用次数上限",
    )
    max_consecutive_tool_failures: Optional[int] = Field(
        default=3,
        ge=1,
        description="连续工具失败次数上限，超过后 run 失败；为空表示不限制",
    )
    custom_prompt: str = Field(default="", description="追加到系统提示词后的自定义指令")

    # ---- 工具 ----
    workspace_root: Optional[str] = Field(
        default=None,
        description="文件系统工具可访问的工作目录；未配置时文件工具不可用",
    )
    allow_tool_absolute_path: bool = Field(
        default=False,
        description="是否允许工具使用工作目录内的绝对路径",
    )
    google_search_api_key: Optional[str] = Field(default=None, description="Google Custom Search API 密钥")
    google_search_engine_id: Optional[str] = Field(default=None, description="Google Custom Search 引擎 ID")
    google_search_base_url: str = Field(
        default="https://www.googleapis.com/customsearch/v1",
        description="Google Custom Search 接口地址",
    )

    # ---- 存储与日志 ----
    storage_root: str = Field(default=".storage", description="存储根目录")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("openrouter_api_key", "google_search_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )


settings = Settings()
