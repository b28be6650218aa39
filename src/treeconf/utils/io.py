"""文件 I/O 工具：原子写入、目标文件锁、SHA-256 摘要与 JSONL 追加。"""  # 模块说明。
# 导入 hashlib 以计算摘要。
import hashlib
# 导入 json 以序列化 JSONL 记录。
import json
# 导入 os 以使用底层文件描述符与 os.replace。
import os
# 导入 tempfile 以在目标目录内创建临时文件。
import tempfile
# 导入 time 以在等待锁时轮询与计时。
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional, Tuple

# POSIX 平台使用 flock，Windows 使用 msvcrt，两者都不可用时退化为 O_EXCL 锁文件。
try:
    import fcntl  # type: ignore
except ImportError:
    fcntl = None

try:
    import msvcrt  # type: ignore
except ImportError:
    msvcrt = None

# 等待锁时的轮询间隔（秒）。
LOCK_POLL_INTERVAL = 0.05

PathLike = str | os.PathLike[str]


def safe_mkdirs(path: PathLike) -> None:
    """创建目录及其父级，已存在时静默跳过。"""  # 函数说明。
    Path(path).mkdir(parents=True, exist_ok=True)


def atomic_write_text(path: PathLike, text: str) -> None:
    """先写入同目录下的临时文件，再用 os.replace 替换目标。

    读者要么看到旧内容，要么看到完整的新内容；失败时临时文件被删除。
    """  # 函数说明。
    target = Path(path)
    safe_mkdirs(target.parent)
    # 临时文件必须与目标在同一目录，os.replace 才是原子的。
    fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target.parent)
    try:
        # newline="" 保证生成内容逐字节写出，不做换行转换。
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())  # 落盘后再替换。
        os.replace(tmp_name, target)
    finally:
        # 替换成功后临时文件已不存在，missing_ok 让两种情况都安全。
        Path(tmp_name).unlink(missing_ok=True)


def sha256_text(text: str) -> str:
    """返回 UTF-8 文本的十六进制 SHA-256 摘要。"""  # 函数说明。
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _try_acquire(path: Path) -> Optional[Tuple[str, Any]]:
    """尝试一次非阻塞加锁，成功返回 (方式, 句柄)，被占用返回 None。"""  # 函数说明。
    if fcntl is not None:
        # 打开或创建锁文件，权限仅限当前用户。
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o600)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            # 已被其他持有者占用。
            os.close(fd)
            return None
        # 前一持有者释放时会删除锁文件；锁住的若已不是路径上的文件则重试。
        try:
            current = os.stat(path).st_ino
        except FileNotFoundError:
            current = None
        if current != os.fstat(fd).st_ino:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)
            return None
        return "flock", fd
    if msvcrt is not None:
        # Windows 上锁住文件的第一个字节。
        handle = open(path, "a+")
        try:
            msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
        except OSError:
            handle.close()
            return None
        return "msvcrt", handle
    # 退化方案：锁文件存在即表示已被占用。
    try:
        fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_RDWR)
    except FileExistsError:
        return None
    return "exclusive", fd


def _release(kind: str, handle: Any) -> None:
    # 按加锁方式对应地解锁并关闭句柄。
    if kind == "flock":
        fcntl.flock(handle, fcntl.LOCK_UN)
        os.close(handle)
    elif kind == "msvcrt":
        try:
            msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
        finally:
            handle.close()
    else:
        os.close(handle)


@contextmanager
def with_file_lock(lock_path: PathLike, timeout_sec: float) -> Iterator[None]:
    """在 lock_path 上持有独占锁，超过 timeout_sec 仍未获得时抛出 TimeoutError。"""  # 函数说明。
    path = Path(lock_path)
    safe_mkdirs(path.parent)
    # 使用单调时钟计算截止时间，不受系统时间调整影响。
    deadline = time.monotonic() + timeout_sec
    while True:
        acquired = _try_acquire(path)
        if acquired is not None:
            break
        if time.monotonic() >= deadline:
            raise TimeoutError(f"Timed out acquiring lock: {path}")
        time.sleep(LOCK_POLL_INTERVAL)
    kind, handle = acquired
    try:
        yield
    finally:
        try:
            _release(kind, handle)
        finally:
            # 释放后删除锁文件，目标目录里不留下 .lock。
            path.unlink(missing_ok=True)


def jsonl_append(path: PathLike, record: dict, *, force_flush: bool = False) -> None:
    """在 <path>.lock 保护下向 JSONL 文件追加一行。"""  # 函数说明。
    target = Path(path)
    safe_mkdirs(target.parent)
    with with_file_lock(target.with_name(target.name + ".lock"), timeout_sec=30):
        with target.open("a", encoding="utf-8") as handle:
            # 每条记录占一行，default=str 处理 Path 等非 JSON 类型。
            handle.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")
            handle.flush()
            if force_flush:
                os.fsync(handle.fileno())  # 无缓冲模式下每行立即落盘。


def jsonl_read(path: PathLike) -> list[dict[str, Any]]:
    """读取 JSONL 文件，跳过空行与损坏行；文件不存在时返回空列表。"""  # 函数说明。
    target = Path(path)
    if not target.exists():
        return []
    records: list[dict[str, Any]] = []
    with target.open("r", encoding="utf-8") as handle:
        for line in handle:
            payload = line.strip()
            # 跳过空行。
            if not payload:
                continue
            try:
                records.append(json.loads(payload))
            except json.JSONDecodeError:
                continue  # 中断写入留下的半行。
    return records
