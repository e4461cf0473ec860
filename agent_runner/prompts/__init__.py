"""系统提示词加载工具。

按语言(locale) 从 prompts/<locale> 目录读取固定的 system prompt，
替换其中的时间戳占位符，并在末尾追加用户自定义指令。
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


PROMPTS_DIR = Path(__file__).resolve().parent
TIMESTAMP_PLACEHOLDER = "[DYNAMIC_TIMESTAMP]"


def load_system_prompt(custom_prompt: str = "", locale: str = "en", now: Optional[datetime] = None) -> str:
    """构造发送给模型的 system prompt：固定提示词 + 当前时间 + 可选自定义指令。"""

    fname = PROMPTS_DIR / locale / "agent_system.md"
    text = fname.read_text(encoding="utf-8").strip()
    stamp = (now or datetime.now(timezone.utc)).isoformat(timespec="seconds")
    text = text.replace(TIMESTAMP_PLACEHOLDER, stamp)
    if custom_prompt and custom_prompt.strip():
        text = f"{text}\n\n## Custom Instructions:\n{custom_prompt.strip()}"
    return text
