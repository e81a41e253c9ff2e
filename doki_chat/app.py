from __future__ import annotations

import contextlib
import logging
import os
from pathlib import Path

import uvicorn

from .config import Settings
from .runtime import build_services
from .web import create_app

logger = logging.getLogger("doki_chat")


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def _is_process_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    if os.name == "nt":
        import ctypes

        process_query_limited_information = 0x1000
        handle = ctypes.windll.kernel32.OpenProcess(process_query_limited_information, False, pid)
        if not handle:
            return False
        ctypes.windll.kernel32.CloseHandle(handle)
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class InstanceLock:
    """Pid file next to the database; a second process on the same data refuses to start."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if self.path.exists():
            holder = 0
            with contextlib.suppress(ValueError, OSError):
                holder = int(self.path.read_text(encoding="utf-8").strip() or "0")
            if holder > 0 and holder != os.getpid() and _is_process_alive(holder):
                raise RuntimeError(f"Doki Chat is already running (pid={holder}). Stop it before starting a new one.")
            with contextlib.suppress(OSError):
                self.path.unlink()
        self.path.write_text(str(os.getpid()), encoding="utf-8")

    def release(self) -> None:
        with contextlib.suppress(OSError):
            if self.path.exists():
                self.path.unlink()


def main() -> None:
    configure_logging()
    settings = Settings.from_env()
    settings.validate()
    if not settings.has_api_key():
        logger.warning("GEMINI_API_KEY is not set; chat replies will fail until a key is supplied.")

    lock = InstanceLock(settings.sqlite_path.parent / "doki_chat.pid")
    lock.acquire()
    try:
        app = create_app(build_services(settings))
        logger.info("Serving on http://%s:%s", settings.web_host, settings.web_port)
        uvicorn.run(app, host=settings.web_host, port=settings.web_port, log_config=None)
    except KeyboardInterrupt:
        logger.info("Shutdown requested, exiting.")
    finally:
        lock.release()


if __name__ == "__main__":
    main()
