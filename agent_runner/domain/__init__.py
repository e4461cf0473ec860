"""领域层模型与协议。

包含：
- models: Message / ToolCall / ToolCallProposal / 模型流式事件 / AgentConfig。
- state: AgentState 标签联合类型。
- conversation: ConversationStore 抽象与 Session 模型。
- exceptions: 业务异常类型定义。
"""
