import logging
import subprocess
from typing import Iterable

logger = logging.getLogger(__name__)


def _run_checked(
    cmd: Iterable[str], timeout: float | None = None
) -> subprocess.CompletedProcess[str]:
    """Wrapper over subprocess.run with check=True and captured text output."""
    args = list(cmd)
    logger.info("Executing command: %s", " ".join(args))
    return subprocess.run(
        args,
        check=True,
        capture_output=True,
        text=True,
        timeout=timeout,
    )


def _describe_failure(exc: Exception) -> str:
    """Turn a subprocess failure into the diagnostic text surfaced to callers."""
    if isinstance(exc, subprocess.CalledProcessError):
        detail = (exc.stderr or exc.stdout or "").strip()
        return f"exit code {exc.returncode}: {detail}" if detail else str(exc)
    if isinstance(exc, subprocess.TimeoutExpired):
        return f"timed out after {exc.timeout}s"
    return str(exc)
