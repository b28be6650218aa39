"""线程池扇出：按输入顺序收集结果，可在首个失败后停止提交。"""  # 模块文档字符串。
# 导入 concurrent.futures 以使用线程池与 wait。
import concurrent.futures  # noqa: ICN001
# 导入 threading 以使用停止提交的事件。
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generic, Iterable, List, Optional, TypeVar

T = TypeVar("T")  # 任务输入类型。
R = TypeVar("R")  # 任务输出类型。


@dataclass
class FanOutResult(Generic[R]):
    """扇出结果：outcomes 与输入一一对应。

    成功的任务为返回值，抛出异常的任务为异常对象，未提交的任务为 None。
    """  # 类说明。

    outcomes: List[Any] = field(default_factory=list)
    submitted: int = 0  # 已提交的任务数，任务按输入顺序提交。
    completed: int = 0  # 已结束（成功或失败）的任务数。

    @property
    def not_submitted(self) -> List[int]:
        """因 fail-fast 未被提交的任务下标。"""  # 属性说明。
        return list(range(self.submitted, len(self.outcomes)))


def fan_out(
    tasks: Iterable[T],
    worker_fn: Callable[[T], R],
    *,
    max_workers: int,
    fail_fast: bool = False,
    on_done: Optional[Callable[[int, Any], None]] = None,
) -> FanOutResult[R]:
    """在线程池中执行 worker_fn，最多 max_workers 个任务同时运行。

    任务按输入顺序提交；fail_fast 时任一任务抛出异常后不再提交新任务，
    已在运行的任务仍会完成。on_done 在每个任务完成后于调用线程中执行。
    """  # 函数说明。

    # 物化任务列表，便于按下标回填结果。
    task_list = list(tasks)
    width = max(1, max_workers)
    # 结果预先填充 None，未提交的任务保持 None。
    result: FanOutResult[R] = FanOutResult(outcomes=[None] * len(task_list))
    stop = threading.Event()
    with concurrent.futures.ThreadPoolExecutor(max_workers=width) as executor:
        # future 到任务下标的映射。
        running: Dict[concurrent.futures.Future[Any], int] = {}
        while result.submitted < len(task_list) or running:
            # 有空闲线程且未要求停止时继续提交。
            while result.submitted < len(task_list) and len(running) < width and not stop.is_set():
                index = result.submitted
                running[executor.submit(worker_fn, task_list[index])] = index
                result.submitted += 1
            # 停止提交后没有在途任务即可退出。
            if not running:
                break
            done, _ = concurrent.futures.wait(running, return_when=concurrent.futures.FIRST_COMPLETED)
            for future in done:
                index = running.pop(future)
                # 异常作为结果记录，不向调用方抛出。
                error = future.exception()
                result.outcomes[index] = error if error is not None else future.result()
                if error is not None and fail_fast:
                    stop.set()
                result.completed += 1
                if on_done is not None:
                    on_done(index, result.outcomes[index])
    return result
