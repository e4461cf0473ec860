"""Model Gateway 集成层。

该包下的模块负责：
- 定义 Gateway 抽象接口 (base)。
- 维护 Provider 与模型配置 (registry)。
- 提供各厂商的具体实现 (如 openrouter_client)。
"""

from typing import Literal, Optional

from agent_runner.config.settings import settings
from agent_runner.domain.exceptions import UnsupportedProviderError
from agent_runner.providers.base import ModelGateway
from agent_runner.providers.openrouter_client import OpenRouterGateway


DefaultProviderName = Literal["openrouter"]


def create_gateway(name: Optional[DefaultProviderName] = None, cfg=settings) -> ModelGateway:
    """根据名称创建 Gateway 实例，默认取配置中的 provider。"""

    provider_name = (name or getattr(cfg, "default_provider", "openrouter")).lower()
    if provider_name == "openrouter":
        return OpenRouterGateway(cfg)
    raise UnsupportedProviderError(provider_name)
