"""定义解析流程使用的错误类型与分类辅助函数。"""  # 模块说明。
# 导入 errno 以识别常见的 I/O 错误码。
import errno
# 导入 typing 以注释可选字段。
from typing import Optional

# 定义所有解析错误的基类，携带失败片段位置与无法解析的引用。
class TreeconfError(Exception):
    """单个叶子解析失败时抛出的致命错误，不做本地重试。"""  # 类说明。

    category = "unknown"  # 错误分类标签，供批处理汇总与 CLI 退出码使用。
    exit_code = 1  # CLI 针对该类错误返回的退出码。

    def __init__(self, message: str, *, location: Optional[str] = None, reference: Optional[str] = None) -> None:
        """保存错误消息、失败片段路径与具体引用。"""  # 方法说明。
        super().__init__(message)
        self.message = message  # 原始消息文本。
        self.location = str(location) if location is not None else None  # 失败片段的位置。
        self.reference = reference  # 无法解析的键、表达式或文件。

    def __str__(self) -> str:
        """在消息后附加片段位置与引用，便于排查 include 链。"""  # 方法说明。
        details = []
        if self.location:
            details.append(f"fragment={self.location}")
        if self.reference:
            details.append(f"reference={self.reference}")
        if not details:
            return self.message
        return f"{self.message} ({', '.join(details)})"

    def as_record(self) -> dict:
        """转换为可写入报告的字典。"""  # 方法说明。
        return {
            "category": self.category,
            "reason": self.message,
            "location": self.location,
            "reference": self.reference,
        }

# 片段、祖先查找的标记文件或根相对目标缺失。
class NotFoundError(TreeconfError):
    """表示引用的片段或文件不存在。"""  # 类说明。

    category = "not-found"
    exit_code = 3

# 片段语法错误。
class ParseError(TreeconfError):
    """表示片段无法被解析为结构化文档。"""  # 类说明。

    category = "parse"
    exit_code = 4

# 局部变量或表达式无法求值（未定义或循环引用）。
class EvaluationError(TreeconfError):
    """表示表达式求值失败，例如未定义引用或循环引用。"""  # 类说明。

    category = "evaluation"
    exit_code = 5

# 生成目标已存在且冲突策略为 error。
class ConflictError(TreeconfError):
    """表示生成目标已存在而策略不允许覆盖。"""  # 类说明。

    category = "conflict"
    exit_code = 6

# 工具自身的配置非法。
class ConfigError(ValueError):
    """对外统一的配置异常类型，包含来源链路信息。"""  # 类说明。

# 定义异常分类函数，帮助批处理汇总与退出码映射。
def classify_exception(exc: BaseException) -> str:
    """根据异常类型返回分类标签。"""  # 函数说明。
    # 直接读取解析错误自带的分类。
    if isinstance(exc, TreeconfError):
        return exc.category
    if isinstance(exc, ConfigError):
        return "config"
    # 文件不存在视为缺失片段。
    if isinstance(exc, FileNotFoundError):
        return "not-found"
    # 权限与其他 I/O 问题统一归为 io。
    if isinstance(exc, PermissionError):
        return "io"
    if isinstance(exc, OSError):
        if exc.errno in {errno.ENOENT, errno.ENOTDIR}:
            return "not-found"
        return "io"
    # 无法识别的异常交由上层决定处理策略。
    return "unknown"

# 定义退出码映射函数。
def exit_code_for(exc: BaseException) -> int:
    """返回异常对应的 CLI 退出码，未知异常返回 1。"""  # 函数说明。
    if isinstance(exc, TreeconfError):
        return exc.exit_code
    if classify_exception(exc) == "not-found":
        return NotFoundError.exit_code
    return 1
