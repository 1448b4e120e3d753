# src/qa_rag/backend/pipelines/base/timing.py

"""
[职责] 阶段计时：为 preprocess/lexical/semantic/fusion/rerank/answer 收集毫秒耗时并导出 timing_ms dict。
[边界] 不做分布式 tracing；不写日志；单请求内使用，不保证线程安全。
[上游关系] PipelineContext 持有 TimingCollector；各阶段用 stage(...) 包裹。
[下游关系] PipelineResponse.metadata.timing_ms 与 preprocessing 诊断信息。
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator


def now_ms() -> float:
    """Monotonic milliseconds for relative durations."""  # docstring: 不作为业务时间戳
    return time.perf_counter() * 1000.0


@dataclass
class TimingCollector:
    """
    [职责] 收集阶段耗时（ms），导出 dict[str, float]。
    [边界] stage key 不限定集合；并发阶段各自写入不同 key，不会互相覆盖。
    """

    _stages_ms: Dict[str, float] = field(default_factory=dict)
    _start_ms: float = field(default_factory=now_ms)

    def add_ms(self, key: str, ms: float, *, accumulate: bool = True) -> None:
        k = str(key).strip()
        if not k:
            return
        v = max(float(ms), 0.0)  # docstring: 负值截断为 0
        if accumulate:
            self._stages_ms[k] = self._stages_ms.get(k, 0.0) + v
        else:
            self._stages_ms[k] = v

    @contextmanager
    def stage(self, key: str, *, accumulate: bool = False) -> Iterator[None]:
        """
        [职责] 上下文管理器形式的阶段计时；异常/取消路径同样写入耗时。
        [边界] 默认覆盖同名 key。
        """
        start = now_ms()
        try:
            yield
        finally:
            self.add_ms(key, now_ms() - start, accumulate=accumulate)

    def total_ms(self) -> float:
        return now_ms() - self._start_ms

    def to_dict(self, *, include_total: bool = True, total_key: str = "total") -> Dict[str, float]:
        out = {k: round(v, 3) for k, v in self._stages_ms.items()}
        if include_total:
            out[total_key] = round(float(self.total_ms()), 3)
        return out
