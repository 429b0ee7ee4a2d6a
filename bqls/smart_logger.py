import json
import os
import threading
import time
from datetime import datetime
from typing import Any, Optional

from bqls.config import settings


class SmartLogger:
    """
    Structured event logger.

    Every entry is one JSON line in the main log. Parameter payloads longer than
    ``max_inline_chars`` are written to a separate detail file and only referenced
    from the main log, so refresh cycles over large projects keep the main log
    readable.

    Environment variables (all optional):
      BQLS_LOG_MAIN_PATH, BQLS_LOG_DETAIL_DIR, BQLS_LOG_MIN_LEVEL,
      BQLS_LOG_INCLUDE_ALL_MIN_LEVEL, BQLS_LOG_CONSOLE_OUTPUT, BQLS_LOG_FILE_OUTPUT
    """

    LEVEL_PRIORITY = {
        "DEBUG": 0,
        "INFO": 1,
        "WARNING": 2,
        "ERROR": 3,
        "CRITICAL": 4
    }
    _instance = None

    @classmethod
    def instance(cls):
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls):
        cls._instance = None

    @classmethod
    def log(cls, level, message, category=None, params=None, max_inline_chars=100):
        cls.instance()._log(level, message, category, params, max_inline_chars)

    def __init__(self,
                 main_log_path=None,
                 detail_log_dir=None,
                 min_level=None,
                 include_all_min_level=None,
                 console_output=None,
                 file_output=None):
        self.main_log_path = self._env(main_log_path, "MAIN_PATH", "logs/bqls.jsonl")
        self.detail_log_dir = self._env(detail_log_dir, "DETAIL_DIR", "logs/details")
        self.min_level = self._env(min_level, "MIN_LEVEL", settings.log_level)
        self.include_all_min_level = self._env(include_all_min_level, "INCLUDE_ALL_MIN_LEVEL", "ERROR")
        self.console_output = self._env_flag(console_output, "CONSOLE_OUTPUT", True)
        self.file_output = self._env_flag(file_output, "FILE_OUTPUT", False)

        self._lock = threading.Lock()
        self._last_second = None
        self._same_second_count = 0

        if self.file_output:
            for dir_path in (os.path.dirname(self.main_log_path), self.detail_log_dir):
                if dir_path:
                    os.makedirs(dir_path, exist_ok=True)

    @staticmethod
    def _env(direct_value: Optional[str], key: str, default: str) -> str:
        if direct_value is not None:
            return direct_value
        return os.environ.get(f"BQLS_LOG_{key}", default)

    @classmethod
    def _env_flag(cls, direct_value: Optional[bool], key: str, default: bool) -> bool:
        if direct_value is not None:
            return bool(direct_value)
        raw = os.environ.get(f"BQLS_LOG_{key}")
        if raw is None:
            return default
        return raw.strip().lower() in {"1", "true", "yes", "on"}

    def _next_detail_id(self) -> str:
        # seconds since epoch plus a counter for entries written within the same second
        second = str(int(time.time()))
        if second == self._last_second:
            self._same_second_count += 1
        else:
            self._last_second = second
            self._same_second_count = 1
        return f"{second}_{self._same_second_count}"

    def _write_detail(self, detail_id: str, payload: Any) -> Optional[str]:
        if not self.file_output:
            return None
        filename = f"{detail_id}.json"
        with open(os.path.join(self.detail_log_dir, filename), "w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False, indent=2, default=str)
        return filename

    def _priority(self, level: str, fallback: int) -> int:
        return self.LEVEL_PRIORITY.get((level or "").upper(), fallback)

    def _should_log(self, level):
        return self._priority(level, 1) >= self._priority(self.min_level, 0)

    def _should_include_all(self, level):
        return self._priority(level, 1) >= self._priority(self.include_all_min_level, 3)

    def _log(self, level, message, category=None, params=None, max_inline_chars=100):
        """
        Args:
            level (str): DEBUG, INFO, WARNING, ERROR, CRITICAL
            message (str): dotted event name, e.g. "schema_fetcher.cycle.completed"
            category (str): component the event belongs to
            params (dict): event details
            max_inline_chars (int): params longer than this go to a detail file (0 = always inline)
        """
        if not self._should_log(level):
            return

        entry = {
            "timestamp": datetime.now().isoformat(),
            "level": level,
            "message": "" if message is None else str(message),
        }
        if category:
            entry["category"] = category

        if params:
            inline = (
                max_inline_chars <= 0
                or len(str(params)) <= max_inline_chars
                or self._should_include_all(level)
            )
            if inline:
                entry["params"] = params
            else:
                with self._lock:
                    detail_id = self._next_detail_id()
                try:
                    detail_ref = self._write_detail(detail_id, params)
                except OSError as e:
                    entry["detail_save_error"] = str(e)
                else:
                    if detail_ref is not None:
                        entry["detail_ref"] = detail_ref
                if isinstance(params, dict):
                    entry["params_summary"] = {"keys": list(params.keys())}
                else:
                    entry["params_summary"] = {"type": type(params).__name__}

        if self.file_output:
            with self._lock:
                with open(self.main_log_path, "a", encoding="utf-8") as f:
                    f.write(json.dumps(entry, ensure_ascii=False, default=str) + "\n")

        if self.console_output:
            category_str = f"[{category}]" if category else ""
            if params and "params" in entry:
                print(f"[{level}]{category_str} {message} {params}")
            else:
                print(f"[{level}]{category_str} {message}")
