import subprocess
import threading
from typing import IO, Any, Callable, Dict, Optional

from stream_service import ERR, OUT


class RunError(RuntimeError):
    """Raised when a shell command cannot be started or exits non-zero."""

    def __init__(self, message: str, output: str = "", exit_code: Optional[int] = None):
        super().__init__(message)
        self.output = output
        self.exit_code = exit_code


def _exit_message(exit_code: int) -> str:
    if exit_code < 0:
        return f"script exited with error: signal {-exit_code}"
    return f"script exited with error: exit status {exit_code}"


def run_task(cmd: str, cwd: Optional[str] = None) -> Dict[str, Any]:
    """Run `cmd` through the shell and wait; stdout and stderr are captured together.

    The command text is handed to the shell verbatim. Callers decide whether it is trusted.
    """
    try:
        res = subprocess.run(
            cmd,
            shell=True,
            cwd=cwd or None,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            encoding="utf-8",
            errors="replace",
        )
    except OSError as e:
        raise RunError(f"start error: {e}")
    if res.returncode != 0:
        raise RunError(_exit_message(res.returncode), output=res.stdout or "", exit_code=res.returncode)
    return {"status": "completed", "exit_code": res.returncode, "output": res.stdout or ""}


def run_task_stream(cmd: str, emit: Callable[[str, str], None], cwd: Optional[str] = None) -> Dict[str, Any]:
    """Run `cmd` through the shell, forwarding each output line as it is produced.

    stdout lines go to emit(OUT, line) and stderr lines to emit(ERR, line),
    each from its own reader thread. Both readers are joined before the
    process is reaped. No timeout is applied.
    """
    try:
        proc = subprocess.Popen(
            cmd,
            shell=True,
            cwd=cwd or None,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
        )
    except OSError as e:
        raise RunError(f"start error: {e}")

    def reader(pipe: IO[str], channel: str) -> None:
        with pipe:
            for line in pipe:
                emit(channel, line.rstrip("\r\n"))

    readers = [
        threading.Thread(target=reader, args=(proc.stdout, OUT), daemon=True),
        threading.Thread(target=reader, args=(proc.stderr, ERR), daemon=True),
    ]
    for t in readers:
        t.start()
    for t in readers:
        t.join()

    exit_code = proc.wait()
    if exit_code != 0:
        raise RunError(_exit_message(exit_code), exit_code=exit_code)
    return {"status": "completed", "exit_code": exit_code}
