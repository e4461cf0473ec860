"""Provider 与模型配置。

本模块将“逻辑模型名”与“具体厂商模型名”解耦：

- 逻辑名（logical_name）：在代码里使用的统一名称，例如 "agent-chat"。
- provider_model：厂商实际提供的模型 ID，例如 "openai/gpt-4o-mini"。

OpenRouter 接受任意模型 ID，不在目录中的名称会原样透传。"""

from dataclasses import dataclass
from typing import Dict, Mapping, Optional


@dataclass
class ModelConfig:
    """单个逻辑模型的配置。"""

    logical_name: str
    provider_model: str
    max_tokens: Optional[int] = None
    default_temperature: float = 0.8


@dataclass
class ProviderConfig:
    """某个 Provider 的整体配置。"""

    name: str
    base_url: str
    models: Dict[str, ModelConfig]

    def resolve_model(self, name: str) -> ModelConfig:
        cfg = self.models.get(name)
        if cfg is not None:
            return cfg
        return ModelConfig(logical_name=name, provider_model=name)


OPENROUTER_CONFIG = ProviderConfig(
    name="openrouter",
    base_url="https://openrouter.ai/api/v1",
    models={
        "agent-chat": ModelConfig(
            logical_name="agent-chat",
            provider_model="openai/gpt-4o-mini",
        ),
    },
)


PROVIDER_REGISTRY: Mapping[str, ProviderConfig] = {
    "openrouter": OPENROUTER_CONFIG,
}


def get_provider_config(name: str) -> ProviderConfig:
    """根据名称获取 ProviderConfig，名称不区分大小写。"""

    key = name.lower()
    for k, cfg in PROVIDER_REGISTRY.items():
        if k.lower() == key:
            return cfg
    raise KeyError(f"Unknown provider: {name!r}")
