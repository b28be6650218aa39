"""通用工具：错误、日志、配置、文件 I/O 与并发。"""  # 包说明。
