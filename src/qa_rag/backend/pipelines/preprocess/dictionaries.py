# src/qa_rag/backend/pipelines/preprocess/dictionaries.py

"""
[职责] QA 领域内置词典：缩写表、同义词表、测试用例 ID 模式，以及自定义词典合并规则。
[边界] 纯数据 + 合并函数；不做匹配。字典插入顺序即替换顺序。
[上游关系] 无。
[下游关系] normalizer/abbreviation/synonym 读取。
"""

from __future__ import annotations

import re
from typing import Dict, List, Mapping, Optional, Tuple, TypeVar


V = TypeVar("V")


ABBREVIATIONS: Dict[str, str] = {
    # testing types
    "tc": "test case",
    "ts": "test scenario",
    "tp": "test plan",
    "uat": "user acceptance testing",
    "sit": "system integration testing",
    "e2e": "end to end",
    "api": "application programming interface",
    "ui": "user interface",
    "db": "database",
    "qa": "quality assurance",
    "qc": "quality control",
    # defects
    "rca": "root cause analysis",
    "bug": "defect",
    "rtm": "requirements traceability matrix",
    "sr": "service request",
    "cr": "change request",
    "pr": "pull request",
    # process
    "bdd": "behavior driven development",
    "tdd": "test driven development",
    "dod": "definition of done",
    "dor": "definition of ready",
    "sla": "service level agreement",
    # common testing
    "regression": "regression testing",
    "smoke": "smoke testing",
    "sanity": "sanity testing",
    "negative": "negative testing",
    "positive": "positive testing",
    "boundary": "boundary value testing",
}

SYNONYMS: Dict[str, List[str]] = {
    # test case related
    "test case": ["test scenario", "test script", "test execution", "test specification"],
    "test scenario": ["test case", "test flow", "test path"],
    "negative": ["invalid", "error", "failure", "exception"],
    "positive": ["valid", "success", "pass"],
    "timeout": ["delay", "hang", "slow", "stuck", "unresponsive"],
    "payment": ["transaction", "billing", "charge", "invoice", "checkout"],
    # execution
    "pass": ["success", "valid", "working"],
    "fail": ["error", "issue", "problem", "defect"],
    "verify": ["validate", "confirm", "check", "assert"],
    "login": ["authentication", "sign in", "authorize"],
    "logout": ["sign out", "disconnect"],
    # search
    "find": ["search", "locate", "get", "retrieve", "query"],
    "test": ["check", "validate", "verify", "confirm"],
    "create": ["add", "new", "insert", "initialize"],
    "update": ["edit", "modify", "change"],
    "delete": ["remove", "drop", "purge"],
    # status
    "active": ["enabled", "running", "online", "working"],
    "inactive": ["disabled", "offline", "stopped"],
    "pending": ["waiting", "in progress", "processing"],
    "completed": ["done", "finished", "successful"],
}

# TC-001 / TEST-12 / US-7 / BUG-3 and the generic PROJECT-123 form
IDENTIFIER_PATTERNS: Tuple[re.Pattern, ...] = (
    re.compile(r"TC-\d+", re.IGNORECASE),
    re.compile(r"TEST-\d+", re.IGNORECASE),
    re.compile(r"US-\d+", re.IGNORECASE),
    re.compile(r"BUG-\d+", re.IGNORECASE),
    re.compile(r"[A-Z]+-\d+", re.IGNORECASE),
)


def merge_dictionary(base: Mapping[str, V], custom: Optional[Mapping[str, V]] = None) -> Dict[str, V]:
    """
    [职责] 合并内置与自定义词典：键统一小写，冲突时自定义条目覆盖内置值。
    [边界] 覆盖的键保留内置位置（插入顺序不变）；新增键追加到末尾。
    """
    merged: Dict[str, V] = {str(k).lower(): v for k, v in base.items()}
    for key, value in (custom or {}).items():
        k = str(key).strip().lower()
        if k:
            merged[k] = value
    return merged
