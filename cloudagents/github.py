"""Helpers for the GitHub repositories agents work on."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

import httpx

logger = logging.getLogger("cloudagents.github")

GITHUB_WEB = "https://github.com"
GITHUB_API = "https://api.github.com"


@dataclass(frozen=True, slots=True)
class RepoRef:
    owner: str
    repo: str

    @property
    def slug(self) -> str:
        return f"{self.owner}/{self.repo}"


def parse_repository(repository: str) -> RepoRef | None:
    """Split ``github.com/owner/repo`` or ``owner/repo`` into its parts."""
    cleaned = repository.strip()
    for scheme in ("https://", "http://"):
        if cleaned.startswith(scheme):
            cleaned = cleaned[len(scheme) :]
    if cleaned.endswith(".git"):
        cleaned = cleaned[: -len(".git")]
    parts = [part for part in cleaned.split("/") if part]
    if len(parts) >= 3 and "github" in parts[0]:
        return RepoRef(owner=parts[1], repo=parts[2])
    if len(parts) >= 2:
        return RepoRef(owner=parts[0], repo=parts[1])
    return None


def branch_commits_url(repository: str, branch_name: str) -> str | None:
    ref = parse_repository(repository)
    if ref is None:
        return None
    return f"{GITHUB_WEB}/{ref.slug}/commits/{branch_name}"


def compare_url(repository: str, base_ref: str, branch_name: str) -> str | None:
    ref = parse_repository(repository)
    if ref is None:
        return None
    return f"{GITHUB_WEB}/{ref.slug}/compare/{base_ref}...{branch_name}"


async def fetch_pushed_at(
    owner: str,
    name: str,
    *,
    client: httpx.AsyncClient | None = None,
    timeout_s: float = 10.0,
) -> datetime | None:
    """Last push time of a public repository, or ``None`` when it cannot be determined."""
    repository = f"{owner}/{name}"
    owns_client = client is None
    http = client or httpx.AsyncClient(timeout=timeout_s)
    try:
        response = await http.get(
            f"{GITHUB_API}/repos/{repository}",
            headers={"Accept": "application/vnd.github.v3+json"},
        )
        if not response.is_success:
            logger.debug(
                "github_repo_lookup_failed",
                extra={"repository": repository, "status_code": response.status_code},
            )
            return None
        pushed_at = response.json().get("pushed_at")
        if not pushed_at:
            return None
        return datetime.fromisoformat(pushed_at.replace("Z", "+00:00"))
    except (httpx.HTTPError, ValueError, AttributeError) as exc:
        logger.debug(
            "github_repo_lookup_failed",
            extra={"repository": repository, "error_type": type(exc).__name__},
        )
        return None
    finally:
        if owns_client:
            await http.aclose()


__all__ = [
    "RepoRef",
    "branch_commits_url",
    "compare_url",
    "fetch_pushed_at",
    "parse_repository",
]
