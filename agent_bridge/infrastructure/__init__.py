"""基础设施层：日志与消息存储适配器。"""
