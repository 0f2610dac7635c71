import logging
import subprocess

logger = logging.getLogger(__name__)


def run_command(cmd, timeout: float = 30, check: bool = True, error_cls=RuntimeError) -> subprocess.CompletedProcess:
    """Run a command without a shell, raising `error_cls` on timeout or failure."""
    if isinstance(cmd, str):
        cmd_list = cmd.split()
        cmd_str = cmd
    else:
        cmd_list = list(cmd)
        cmd_str = " ".join(cmd_list)

    logger.debug(f"  $ {cmd_str}")
    try:
        result = subprocess.run(
            cmd_list,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        raise error_cls(f"Command timed out after {timeout}s: {cmd_str}")
    except OSError as e:
        raise error_cls(f"Command could not start: {cmd_str} ({e})")

    if check and result.returncode != 0:
        logger.error(f"  Command failed (rc={result.returncode}): {result.stderr.strip()}")
        raise error_cls(f"Command failed: {cmd_str}\nstderr: {result.stderr.strip()}")
    return result
