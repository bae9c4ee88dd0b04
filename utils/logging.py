import os
import json
import torch
import numpy as np
from enum import IntEnum
import threading
import queue
from time import perf_counter
from pathlib import Path
from datetime import datetime
from threading import Lock
from typing import Any, Optional, Union, Dict, List

from utils.helpers import suppress_stderr_fd

try:
    os.environ.setdefault("TF_CPP_MIN_LOG_LEVEL", "3")
    os.environ.setdefault("GLOG_minloglevel", "2")
    with suppress_stderr_fd():
        from torch.utils.tensorboard import SummaryWriter
except ImportError:
    SummaryWriter = None

DEFAULT_LOG_DIR = "runs/detect_core"


class LogLevel(IntEnum):
    DEBUG = 10
    INFO = 20
    WARNING = 30
    ERROR = 40
    BASIC = 50  # scalar series such as loss components


CONSOLE_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


class YOLOLogger:
    """
    Tagged logger for the detection core.

    Text levels (DEBUG..ERROR) go to the console, log.txt and log.jsonl; BASIC
    scalar series go to tensorboard. Writes happen on a background thread so
    numeric code never blocks on disk.
    """
    def __init__(
        self,
        log_dir: Union[str, Path] = DEFAULT_LOG_DIR,
        level: Union[LogLevel, List[LogLevel], str, int] = LogLevel.INFO,
        console: bool = True,
        tensorboard: bool = True,
        flush_always: bool = True,
    ):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.console_min_level: LogLevel = LogLevel.INFO
        self.tb_basic_enabled: bool = True
        self.apply_level_tokens(level)
        self.console = bool(console)
        env_tb = os.getenv("YOLO_TENSORBOARD", "").strip().lower()
        tb_enabled_env = env_tb not in ("0", "false", "no")
        self.tensorboard = tensorboard and tb_enabled_env and SummaryWriter is not None
        self.flush_always = flush_always
        self.step = 0
        self.writer = None
        if self.tensorboard:
            try:
                self.writer = SummaryWriter(str(self.log_dir))
            except OSError:
                self.tensorboard = False
                self.writer = None
        self.log_file = self.log_dir / "log.txt"
        self.jsonl_file = self.log_dir / "log.jsonl"
        self._lock = Lock()
        self._t0 = perf_counter()
        self._q: "queue.Queue[dict]" = queue.Queue(maxsize=10000)
        self._stop_evt = threading.Event()
        self._worker = threading.Thread(target=self._run, name="yolo-logger", daemon=True)
        self._worker.start()
        self._enqueue({"type": "text", "line": self._format_line("logger initialized", LogLevel.INFO),
                       "level": LogLevel.INFO})

    @staticmethod
    def _parse_tokens(level_in) -> List[str]:
        if isinstance(level_in, LogLevel):
            return [level_in.name]
        if isinstance(level_in, int):
            return [n for n in CONSOLE_LEVELS if int(LogLevel[n]) == int(level_in)]
        if isinstance(level_in, str):
            return [p.strip().upper() for p in level_in.split(',') if p.strip()]
        if isinstance(level_in, (list, tuple)):
            return [l.name if isinstance(l, LogLevel) else str(l).upper() for l in level_in]
        return []

    def apply_level_tokens(self, level_in):
        """
        Parse level tokens and configure filters.
        - console tokens: DEBUG, INFO, WARNING, ERROR -> set threshold (default INFO)
        - BASIC (tensorboard scalars) is always enabled while a writer exists
        """
        tokens = self._parse_tokens(level_in)
        cli_tokens = [t for t in tokens if t in CONSOLE_LEVELS]
        self.console_min_level = min(LogLevel[t] for t in cli_tokens) if cli_tokens else LogLevel.INFO
        self.tb_basic_enabled = True

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

    def is_enabled(self, level: LogLevel) -> bool:
        if level == LogLevel.BASIC:
            return self.tb_basic_enabled and self.writer is not None
        return level >= self.console_min_level

    def _format_line(self, text: str, level: LogLevel) -> str:
        ts = datetime.now().strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
        return f"[{ts}] [{level.name:5s}] {text}"

    def _enqueue(self, rec: Dict[str, Any]):
        try:
            self._q.put_nowait(rec)
        except queue.Full:
            pass

    def _log_to_tensorboard(self, tag: str, data: Any, step: int):
        if isinstance(data, dict):
            for k, v in data.items():
                self._log_to_tensorboard(f"{tag}/{k}", v, step)
        elif isinstance(data, (int, float, np.number)):
            self._enqueue({"type": "tb_scalar", "tag": tag, "value": float(data), "step": step})
        elif isinstance(data, torch.Tensor) and data.numel() == 1:
            self._enqueue({"type": "tb_scalar", "tag": tag, "value": float(data.item()), "step": step})
        else:
            self._enqueue({"type": "tb_text", "tag": tag, "text": str(data), "step": step})

    @staticmethod
    def _jsonable(data: Any):
        if isinstance(data, (int, float, str, bool)) or data is None:
            return data
        if isinstance(data, torch.Tensor):
            return float(data.item()) if data.numel() == 1 else data.detach().cpu().tolist()
        if isinstance(data, np.ndarray):
            return data.tolist()
        if isinstance(data, np.number):
            return data.item()
        if isinstance(data, dict):
            return {str(k): YOLOLogger._jsonable(v) for k, v in data.items()}
        if isinstance(data, (list, tuple)):
            return [YOLOLogger._jsonable(v) for v in data]
        return str(data)

    def log(
        self,
        tag: str,
        data: Any,
        level: LogLevel = LogLevel.INFO,
        step: Optional[int] = None,
        console_msg: Optional[str] = None
    ):
        if step is not None:
            self.step = int(step)
        if not self.is_enabled(level):
            return
        if level == LogLevel.BASIC:
            self._log_to_tensorboard(tag, data, self.step)
            return

        rec = {
            "time": datetime.now().isoformat(), "elapsed_s": round(perf_counter() - self._t0, 3),
            "step": self.step, "level": level.name, "tag": tag, "data": self._jsonable(data)
        }
        self._enqueue({"type": "jsonl", "record": rec})
        msg = console_msg if console_msg is not None else rec["data"]
        self._enqueue({"type": "text", "line": self._format_line(f"{tag}: {msg}", level),
                       "level": level})

    def debug(self, tag: str, data: Any, **kwargs):
        self.log(tag, data, LogLevel.DEBUG, **kwargs)

    def info(self, tag: str, data: Any, **kwargs):
        self.log(tag, data, LogLevel.INFO, **kwargs)

    def basic(self, tag: str, data: Any, **kwargs):
        """Log scalar series such as the box, cls and dfl loss components."""
        self.log(tag, data, LogLevel.BASIC, **kwargs)

    def warning(self, tag: str, data: Any, **kwargs):
        self.log(tag, data, LogLevel.WARNING, **kwargs)

    def error(self, tag: str, data: Any, **kwargs):
        self.log(tag, data, LogLevel.ERROR, **kwargs)

    def set_step(self, step: int):
        self.step = int(step)

    def log_losses(self, losses: Dict[str, float], step: Optional[int] = None):
        s = self.step if step is None else step
        for k, v in losses.items():
            self.basic(f"loss/{k}", float(v), step=s)
        tot = float(sum(losses.values())) if losses else 0.0
        parts = ", ".join(f"{k}:{float(v):.4f}" for k, v in losses.items())
        self.basic("loss/total", tot, step=s)
        self.debug("loss/summary", f"{tot:.4f} ({parts})", step=s)

    def flush(self, timeout: float = 2.0):
        """Block until queued records are written (used by tests and close)."""
        done = threading.Event()
        self._enqueue({"type": "_barrier", "event": done})
        done.wait(timeout)

    def close(self):
        if self._worker.is_alive():
            self._stop_evt.set()
            self._enqueue({"type": "_stop"})
            self._worker.join(timeout=2.0)
        if self.writer:
            self.writer.flush()
            self.writer.close()
            self.writer = None

    def _write_line(self, line: str, level: LogLevel):
        if self.console and level >= self.console_min_level:
            print(line, flush=self.flush_always)
        with self._lock:
            with open(self.log_file, "a", encoding="utf-8") as f:
                f.write(line + "\n")

    def _handle(self, rec: Dict[str, Any]):
        kind = rec.get("type")
        if kind == "text":
            self._write_line(rec["line"], rec.get("level", LogLevel.INFO))
        elif kind == "jsonl":
            with self._lock:
                with open(self.jsonl_file, "a", encoding="utf-8") as f:
                    f.write(json.dumps(rec["record"], default=str) + "\n")
        elif kind == "_barrier":
            rec["event"].set()
        elif self.writer is not None:
            if kind == "tb_scalar":
                self.writer.add_scalar(rec["tag"], rec["value"], rec["step"])
            elif kind == "tb_text":
                self.writer.add_text(rec["tag"], rec["text"], rec["step"])
            if self.flush_always:
                self.writer.flush()

    def _run(self):
        while True:
            try:
                rec = self._q.get(timeout=0.1)
            except queue.Empty:
                if self._stop_evt.is_set():
                    break
                continue
            if rec.get("type") == "_stop":
                break
            try:
                self._handle(rec)
            except (OSError, ValueError, TypeError) as e:
                # the writer thread must survive a bad record
                print(f"yolo-logger: dropped {rec.get('type')} record: {e}", flush=True)


_logger: Optional[YOLOLogger] = None
_logger_lock = Lock()


def get_logger(log_dir: Optional[str] = None, **kwargs) -> YOLOLogger:
    global _logger
    with _logger_lock:
        if _logger is None:
            _logger = YOLOLogger(log_dir or os.getenv("YOLO_LOG_DIR", DEFAULT_LOG_DIR), **kwargs)
        return _logger


def set_log_level(level: Union[LogLevel, str, int, List[Union[LogLevel, str]]]):
    """Apply level tokens to the process-wide logger, creating it if needed."""
    get_logger().apply_level_tokens(level)


def reset_logger():
    """Close and drop the process-wide logger so the next get_logger() builds a fresh one."""
    global _logger
    with _logger_lock:
        if _logger is not None:
            _logger.close()
        _logger = None
