"""JSON 行日志。"""
