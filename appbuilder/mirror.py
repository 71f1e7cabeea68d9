import base64
import logging
import re
import time
from typing import Protocol

import httpx

from appbuilder.errors import MirrorError
from appbuilder.models import MirrorTarget


logger = logging.getLogger("appbuilder.mirror")


class MirrorClient(Protocol):
    async def create_repo(self, name: str, description: str) -> str: ...

    async def commit_files(self, repo: str, files: dict[str, str], message: str) -> bool: ...


class GitHubMirrorClient:
    """Mirror client for the GitHub REST API.

    Repositories are created empty; files are committed one by one through
    the contents API, passing the blob sha when a file already exists.
    """

    def __init__(self, token: str, api_url: str = "https://api.github.com", timeout: float = 20.0):
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self._headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        self._owner: str | None = None

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.api_url, headers=self._headers, timeout=self.timeout
        )

    async def _login(self, client: httpx.AsyncClient) -> str:
        if self._owner is None:
            resp = await client.get("/user")
            if resp.status_code == 401:
                raise MirrorError("GitHub authentication failed: invalid or expired token")
            resp.raise_for_status()
            self._owner = str(resp.json()["login"])
        return self._owner

    async def create_repo(self, name: str, description: str) -> str:
        async with self._client() as client:
            resp = await client.post(
                "/user/repos",
                json={
                    "name": name,
                    "description": description[:350],
                    "private": False,
                    "auto_init": False,
                },
            )
            if resp.status_code == 422:
                raise MirrorError(f"Repository {name!r} already exists", {"repo": name})
            if resp.status_code == 403:
                raise MirrorError("Insufficient permissions to create repositories")
            resp.raise_for_status()
            data = resp.json()
            self._owner = data.get("owner", {}).get("login") or self._owner
            return str(data["html_url"])

    async def commit_files(self, repo: str, files: dict[str, str], message: str) -> bool:
        async with self._client() as client:
            owner = await self._login(client)
            failures = 0
            for path, content in files.items():
                url = f"/repos/{owner}/{repo}/contents/{path}"
                body: dict = {
                    "message": message,
                    "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
                }
                existing = await client.get(url)
                if existing.status_code == 200:
                    body["sha"] = existing.json().get("sha")
                resp = await client.put(url, json=body)
                if resp.status_code not in (200, 201):
                    failures += 1
                    logger.warning(
                        "commit of %s to %s failed: %s %s",
                        path,
                        repo,
                        resp.status_code,
                        resp.text[:200],
                    )
            return failures == 0


def repo_name_for(prompt: str, now: float | None = None) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", prompt.lower()).strip("-")[:40].strip("-")
    stamp = int((now if now is not None else time.time()) * 1000)
    return f"{slug or 'generated-app'}-{stamp}"


def commit_message_for(prompt: str, changed: list[str], is_edit: bool) -> str:
    if is_edit and changed:
        shown = ", ".join(changed[:5])
        more = f" (+{len(changed) - 5} more)" if len(changed) > 5 else ""
        return f"Update {shown}{more}"
    summary = " ".join(prompt.split())
    if len(summary) > 72:
        summary = summary[:69] + "..."
    return f"Initial commit - {summary}" if summary else "Initial commit"


class MirrorService:
    """Keeps one mirror repository per project.

    The repository is created once, on the first successful apply, and every
    later apply of that project commits to it.
    """

    def __init__(self, client: MirrorClient | None):
        self.client = client
        self.targets: dict[str, MirrorTarget] = {}

    @property
    def enabled(self) -> bool:
        return self.client is not None

    def target_for(self, project_id: str) -> MirrorTarget | None:
        return self.targets.get(project_id)

    async def ensure_repository(self, project_id: str, prompt: str) -> MirrorTarget | None:
        if self.client is None:
            return None
        existing = self.targets.get(project_id)
        if existing is not None:
            return existing
        name = repo_name_for(prompt)
        url = await self.client.create_repo(name, f"Auto-generated app: {prompt[:200]}")
        target = MirrorTarget(repo_name=name, repo_url=url)
        self.targets[project_id] = target
        logger.info("created mirror repository %s for project %s", url, project_id)
        return target

    async def commit(self, project_id: str, files: dict[str, str], message: str) -> bool:
        target = self.targets.get(project_id)
        if self.client is None or target is None or not files:
            return False
        ok = await self.client.commit_files(target.repo_name, files, message)
        if ok:
            logger.info("committed %d files to %s", len(files), target.repo_name)
        else:
            logger.warning("partial commit to %s", target.repo_name)
        return ok
