"""领域层模型与协议。

包含：
- models: 调用参数、统一响应与流式事件模型。
- conversation: 线程、消息与 StorageAdapter 抽象。
- exceptions: 业务异常类型定义。
"""
