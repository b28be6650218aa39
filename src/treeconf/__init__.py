"""treeconf：分层配置树解析工具。"""  # 包说明。

__version__ = "0.1.0"
