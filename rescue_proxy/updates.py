"""Compare local checkouts against the latest GitHub commit."""

from __future__ import annotations

import json
import logging
import tomllib
from dataclasses import asdict, dataclass
from pathlib import Path

import httpx

logger = logging.getLogger(__name__)

GITHUB_OWNER = "fishundbug"
GITHUB_API = "https://api.github.com"


@dataclass
class RepoTarget:
    name: str
    repo: str
    local_path: Path | None


@dataclass
class RepoStatus:
    name: str
    repo: str
    local_version: str
    local_commit: str | None
    latest_commit: str | None
    latest_message: str
    has_update: bool
    repo_url: str

    def to_dict(self) -> dict:
        return asdict(self)


def local_version(path: Path) -> str:
    pyproject = path / "pyproject.toml"
    if pyproject.is_file():
        try:
            data = tomllib.loads(pyproject.read_text(encoding="utf-8"))
            return data.get("project", {}).get("version", "unknown")
        except tomllib.TOMLDecodeError:
            return "unknown"
    for name in ("package.json", "manifest.json"):
        candidate = path / name
        if candidate.is_file():
            try:
                return json.loads(candidate.read_text(encoding="utf-8")).get("version", "unknown")
            except json.JSONDecodeError:
                return "unknown"
    return "unknown"


def local_commit(path: Path) -> str | None:
    """Short hash of the checked-out commit, read straight from ``.git``."""
    head_path = path / ".git" / "HEAD"
    if not head_path.is_file():
        return None
    head = head_path.read_text(encoding="utf-8").strip()
    if head.startswith("ref: "):
        ref_path = path / ".git" / head[5:]
        if not ref_path.is_file():
            return None
        return ref_path.read_text(encoding="utf-8").strip()[:7]
    return head[:7]


async def latest_commit(client: httpx.AsyncClient, repo: str) -> tuple[str | None, str]:
    url = f"{GITHUB_API}/repos/{GITHUB_OWNER}/{repo}/commits"
    try:
        resp = await client.get(
            url,
            params={"per_page": 1},
            headers={
                "User-Agent": "rescue-proxy",
                "Accept": "application/vnd.github.v3+json",
            },
        )
    except httpx.HTTPError as e:
        logger.error("Fetching latest commit for %s failed: %s", repo, e)
        return None, ""
    if resp.status_code != 200:
        logger.warning("GitHub returned %d for %s", resp.status_code, repo)
        return None, ""
    try:
        commits = resp.json()
    except ValueError as e:
        logger.warning("GitHub returned a non-JSON body for %s: %s", repo, e)
        return None, ""
    if not isinstance(commits, list) or not commits or not isinstance(commits[0], dict):
        return None, ""
    sha = (commits[0].get("sha") or "")[:7] or None
    message = (commits[0].get("commit", {}).get("message") or "").split("\n")[0]
    return sha, message


async def check_updates(
    targets: list[RepoTarget],
    client: httpx.AsyncClient | None = None,
) -> list[RepoStatus]:
    own_client = client is None
    client = client or httpx.AsyncClient(timeout=httpx.Timeout(10.0))
    results: list[RepoStatus] = []
    try:
        for target in targets:
            version, commit = "unknown", None
            if target.local_path is not None:
                version = local_version(target.local_path)
                commit = local_commit(target.local_path)
            latest, message = await latest_commit(client, target.repo)
            results.append(RepoStatus(
                name=target.name,
                repo=target.repo,
                local_version=version,
                local_commit=commit,
                latest_commit=latest,
                latest_message=message,
                has_update=bool(commit and latest and commit != latest),
                repo_url=f"https://github.com/{GITHUB_OWNER}/{target.repo}",
            ))
    finally:
        if own_client:
            await client.aclose()
    return results


def default_targets(directories_extensions: Path | None = None) -> list[RepoTarget]:
    """This checkout plus the browser-side companion extension, when installed."""
    project_root = Path(__file__).resolve().parent.parent
    ui_path = None
    if directories_extensions is not None:
        candidate = Path(directories_extensions) / "rescue-proxy-ui"
        if candidate.is_dir():
            ui_path = candidate
    return [
        RepoTarget(name="Backend proxy", repo="rescue-proxy", local_path=project_root),
        RepoTarget(name="Frontend extension", repo="rescue-proxy-ui", local_path=ui_path),
    ]
