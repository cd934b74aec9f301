"""
Command Executor

Runs the external marketplace tool, one process per call.
"""
import asyncio
import logging
import os
from typing import Dict, Optional, Sequence

from .errors import ExecError

logger = logging.getLogger(__name__)


class CommandExecutor:
    """
    Spawns external commands and returns their trimmed standard output.

    Environment overrides are merged on top of this process's environment.
    There is no retry here; callers that need polling loop themselves.
    """

    async def execute(
        self,
        command: str,
        args: Sequence[str],
        env: Optional[Dict[str, str]] = None,
        input: Optional[str] = None,
    ) -> str:
        """
        Run ``command`` with ``args``.

        Args:
            command: Executable name or path
            args: Arguments passed verbatim (no shell)
            env: Variables merged over ``os.environ``
            input: Optional text written to stdin

        Returns:
            Standard output with surrounding whitespace removed

        Raises:
            ExecError: stderr (or stdout, or the spawn error) of a failed run
        """
        merged_env = {**os.environ, **(env or {})}

        try:
            process = await asyncio.create_subprocess_exec(
                command,
                *args,
                stdin=asyncio.subprocess.PIPE if input is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=merged_env,
            )
        except OSError as e:
            raise ExecError(str(e)) from e

        stdout, stderr = await process.communicate(
            input.encode("utf-8") if input is not None else None
        )
        out = stdout.decode("utf-8", errors="replace")
        err = stderr.decode("utf-8", errors="replace")

        if process.returncode != 0:
            message = err.strip() or out.strip() or f"{command} exited with status {process.returncode}"
            logger.debug(f"Command {command} {' '.join(args[:3])} failed: {message}")
            raise ExecError(message)

        return out.strip()
