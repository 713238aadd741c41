"""Local git access, run as subprocesses in the caller's working copy."""

import logging
import subprocess
from abc import ABC, abstractmethod
from typing import List, Optional

from .errors import LocalVCSFailure
from .metrics import git_commands_total

logger = logging.getLogger(__name__)


class GitGateway(ABC):
    @abstractmethod
    def read_last_commit_sha(self, path: str) -> str:
        """Return the SHA of HEAD in the working copy at ``path``."""

    @abstractmethod
    def force_push(self, path: str, branch: str, remote: str = "origin") -> None:
        """Force-push HEAD of ``path`` to ``branch`` on ``remote``."""


class SubprocessGit(GitGateway):
    def __init__(self, timeout: Optional[float] = None, executable: str = "git"):
        self.timeout = timeout
        self.executable = executable

    def _run(self, operation: str, args: List[str], cwd: str) -> str:
        cmd = [self.executable, *args]
        logger.debug("git.run: operation=%s cwd=%s cmd=%s", operation, cwd, " ".join(cmd))
        try:
            proc = subprocess.run(
                cmd,
                cwd=cwd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            git_commands_total.labels(operation=operation, result="timeout").inc()
            output = e.output if isinstance(e.output, str) else (e.output or b"").decode("utf-8", "replace")
            raise LocalVCSFailure(output or f"git {operation} timed out after {self.timeout}s", command=cmd) from e
        except OSError as e:
            git_commands_total.labels(operation=operation, result="error").inc()
            raise LocalVCSFailure(str(e), command=cmd) from e
        if proc.returncode != 0:
            git_commands_total.labels(operation=operation, result="error").inc()
            logger.debug("git.failed: operation=%s returncode=%s", operation, proc.returncode)
            raise LocalVCSFailure(proc.stdout, command=cmd, returncode=proc.returncode)
        git_commands_total.labels(operation=operation, result="success").inc()
        return proc.stdout

    def read_last_commit_sha(self, path: str) -> str:
        return self._run("log", ["log", "-1", "--pretty=format:%H"], cwd=path).strip()

    def force_push(self, path: str, branch: str, remote: str = "origin") -> None:
        self._run("push", ["push", "-f", remote, f"HEAD:{branch}"], cwd=path)
