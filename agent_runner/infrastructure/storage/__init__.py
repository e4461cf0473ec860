"""对话历史与会话的存储实现。"""
