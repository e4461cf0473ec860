"""Agent 运行编排：状态机、审批策略与工具调用组装。"""
