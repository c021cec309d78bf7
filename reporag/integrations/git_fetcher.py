"""Repository fetch via the git command line."""

import logging
import os
import re
import subprocess

from reporag.errors import (
    PermanentError,
    RepositoryAccessError,
    RepositoryNotFoundError,
    TransientError,
)

logger = logging.getLogger(__name__)

_NOT_FOUND = re.compile(
    r"Remote branch .* not found|Repository not found|does not appear to be a git repository|"
    r"not found in upstream|could not find remote branch",
    re.IGNORECASE,
)
_ACCESS_DENIED = re.compile(
    r"Authentication failed|could not read Username|Permission denied|terminal prompts disabled",
    re.IGNORECASE,
)


class GitFetcher:
    """Shallow, single-branch clones of remote repositories."""

    def __init__(self, timeout: float = 300.0):
        self.timeout = timeout

    def fetch(self, url: str, branch: str, destination: str) -> str:
        """
        Clone one branch of a repository into destination.

        Args:
            url: Repository URL
            branch: Branch to check out
            destination: Empty or missing directory to clone into

        Returns:
            The destination path

        Raises:
            RepositoryNotFoundError: unknown repository or branch
            RepositoryAccessError: credentials rejected
            TransientError: network failure or clone timeout
        """
        cmd = [
            "git", "clone",
            "--depth", "1",
            "--branch", branch,
            "--single-branch",
            url, destination,
        ]
        logger.info(f"Cloning {url} ({branch})")
        try:
            subprocess.run(
                cmd,
                check=True,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                env={**os.environ, "GIT_TERMINAL_PROMPT": "0"},
            )
        except FileNotFoundError as e:
            raise PermanentError("git executable not found") from e
        except subprocess.TimeoutExpired as e:
            raise TransientError(f"Cloning {url} timed out after {self.timeout:g}s") from e
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or "").strip()
            if _NOT_FOUND.search(stderr):
                raise RepositoryNotFoundError(
                    f"Repository {url} or branch '{branch}' not found: {stderr}"
                ) from e
            if _ACCESS_DENIED.search(stderr):
                raise RepositoryAccessError(f"Access denied to {url}: {stderr}") from e
            raise TransientError(f"Failed to clone repository: {stderr}") from e

        return destination
