"""
GitHub Client - Repository preflight checks.

Uses PyGithub to confirm that a repository and branch exist before an
ingestion run clones them, so that typos fail fast as permanent errors
instead of burning retries on git.
"""

import logging
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from github import Github, GithubException, RateLimitExceededException
from github.Repository import Repository

from reporag.errors import (
    PermanentError,
    RepoRAGError,
    RepositoryAccessError,
    RepositoryNotFoundError,
    TransientError,
    classify_exception,
)
from reporag.graph.state import parse_github_url

logger = logging.getLogger(__name__)


class GitHubClient:
    """
    Client for GitHub operations.

    Handles:
    - Resolving repository URLs to owner/name
    - Checking that a branch exists
    - Reporting rate limit status
    """

    def __init__(self, token: str, github: Optional[Github] = None):
        """
        Initialize GitHub client.

        Args:
            token: GitHub personal access token
            github: Pre-built PyGithub client (tests inject a mock here)
        """
        if not token and github is None:
            raise ValueError(
                "GitHub token not configured. Please set GITHUB_TOKEN environment variable."
            )
        self.github = github or Github(token)

    def get_repository(self, url: str) -> Repository:
        """Resolve a GitHub URL to a repository."""
        owner, name = parse_github_url(url)
        if not owner or not name:
            raise PermanentError(f"Not a GitHub repository URL: {url}")

        with _github_errors(f"repository {owner}/{name}"):
            return self.github.get_repo(f"{owner}/{name}")

    def check_branch(self, url: str, branch: str) -> Dict[str, str]:
        """
        Confirm that a branch exists.

        Returns:
            Dict with full_name, branch and the head commit sha

        Raises:
            RepositoryNotFoundError: repository or branch is missing
            RepositoryAccessError: token lacks access
            TransientError: rate limited or GitHub unavailable
        """
        repo = self.get_repository(url)
        with _github_errors(f"branch '{branch}' of {repo.full_name}"):
            ref = repo.get_branch(branch)

        logger.debug(f"Branch {branch} of {repo.full_name} is at {ref.commit.sha}")
        return {
            "full_name": repo.full_name,
            "branch": ref.name,
            "sha": ref.commit.sha,
        }

    def is_github_url(self, url: str) -> bool:
        owner, name = parse_github_url(url)
        return bool(owner and name)

    def check_connection(self) -> Dict:
        """
        Check the GitHub connection and permissions.

        Returns:
            Dict with connection status and user info
        """
        try:
            user = self.github.get_user()
            return {
                "connected": True,
                "user": user.login,
                "rate_limit": {
                    "remaining": self.github.rate_limiting[0],
                    "limit": self.github.rate_limiting[1],
                },
            }
        except GithubException as e:
            return {
                "connected": False,
                "error": str(e),
            }


@contextmanager
def _github_errors(what: str) -> Iterator[None]:
    """Map PyGithub exceptions onto the error taxonomy."""
    try:
        yield
    except RateLimitExceededException as e:
        raise TransientError(f"GitHub rate limit exceeded while reading {what}") from e
    except GithubException as e:
        if e.status == 404:
            raise RepositoryNotFoundError(f"GitHub {what} not found") from e
        if e.status in (401, 403):
            raise RepositoryAccessError(f"Access denied to GitHub {what}") from e
        if e.status is not None and e.status >= 500:
            raise TransientError(f"GitHub unavailable while reading {what}") from e
        raise PermanentError(f"GitHub error for {what}: {e}") from e
    except RepoRAGError:
        raise
    except Exception as e:
        raise classify_exception(e, f"GitHub {what}") from e
