"""工具基类。

每个工具声明一个 pydantic 参数模型（args_model），用于：
1. 注册时生成并校验参数 JSON Schema；
2. 执行前把已解码的参数字典校验为强类型对象。

工具自己负责把内部失败映射到 ToolError 体系（见 domain.exceptions），
ToolExecutor 不替工具推断领域语义。
"""

from typing import Any, Dict, Type

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from agent_runner.domain.exceptions import InvalidArguments, MissingRequiredParameter
from .definitions import TOOL_NAME_PATTERN, ToolDescriptor


class Tool:
    """可被模型调用的工具。

    子类需要提供 name / description / args_model，并实现 run()。
    is_available() 为可用性前置条件（例如依赖的外部配置是否存在）。
    """

    name: str = ""
    description: str = ""
    args_model: Type[BaseModel] = BaseModel

    def __init__(self, enabled: bool = True):
        self.enabled = enabled

    def is_available(self) -> bool:
        return True

    def parameters_schema(self) -> Dict[str, Any]:
        schema = dict(self.args_model.model_json_schema())
        schema.pop("title", None)
        schema.setdefault("properties", {})
        schema.setdefault("required", [])
        return schema

    def descriptor(self) -> ToolDescriptor:
        return ToolDescriptor(
            name=self.name,
            description=self.description,
            parameters=self.parameters_schema(),
            enabled=self.enabled,
            precondition=self.is_available,
        )

    def validate_definition(self) -> None:
        """注册时校验工具定义，失败抛出 ValueError。"""

        if not TOOL_NAME_PATTERN.match(self.name or ""):
            raise ValueError(f"Invalid tool name: {self.name!r}")
        if not (isinstance(self.args_model, type) and issubclass(self.args_model, BaseModel)):
            raise ValueError(f"Tool {self.name!r} must declare a pydantic args_model")
        schema = self.parameters_schema()
        if schema.get("type") != "object":
            raise ValueError(f"Tool {self.name!r} parameters must be a JSON object schema")

    def parse_arguments(self, arguments: Dict[str, Any]) -> BaseModel:
        try:
            return self.args_model.model_validate(arguments)
        except PydanticValidationError as exc:
            errors = exc.errors()
            for err in errors:
                if err.get("type") == "missing" and err.get("loc"):
                    raise MissingRequiredParameter(str(err["loc"][0])) from exc
            details = "; ".join(
                f"{'.'.join(str(p) for p in err.get('loc', ())) or '<root>'}: {err.get('msg')}"
                for err in errors
            )
            raise InvalidArguments(self.name, details) from exc

    async def execute(self, arguments: Dict[str, Any]) -> str:
        args = self.parse_arguments(arguments)
        return await self.run(args)

    async def run(self, args: Any) -> str:
        raise NotImplementedError
