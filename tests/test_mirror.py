"""Tests for the source-control mirror."""

import base64
import json

import httpx
import pytest

from conftest import FakeMirrorClient
from appbuilder.errors import MirrorError
from appbuilder.mirror import GitHubMirrorClient, MirrorService, commit_message_for, repo_name_for


def _client_with(handler):
    client = GitHubMirrorClient("ghp_test", "https://api.github.test")

    def factory():
        return httpx.AsyncClient(
            base_url=client.api_url,
            headers=client._headers,
            transport=httpx.MockTransport(handler),
        )

    client._client = factory
    return client


class TestGitHubMirrorClient:
    """Tests for GitHubMirrorClient against a mocked API."""

    @pytest.mark.asyncio
    async def test_create_repo_returns_url(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(
                201,
                json={"html_url": "https://github.com/tester/todo-1", "owner": {"login": "tester"}},
            )

        client = _client_with(handler)
        url = await client.create_repo("todo-1", "Auto-generated app")

        assert url == "https://github.com/tester/todo-1"
        assert seen[0].url.path == "/user/repos"
        assert seen[0].headers["authorization"] == "Bearer ghp_test"
        assert json.loads(seen[0].content)["auto_init"] is False
        assert client._owner == "tester"

    @pytest.mark.asyncio
    async def test_create_repo_conflict_raises(self):
        client = _client_with(lambda request: httpx.Response(422, json={"message": "exists"}))

        with pytest.raises(MirrorError) as exc:
            await client.create_repo("todo-1", "x")
        assert exc.value.details == {"repo": "todo-1"}

    @pytest.mark.asyncio
    async def test_commit_passes_sha_for_existing_files(self):
        puts = {}

        def handler(request):
            path = request.url.path
            if path == "/user":
                return httpx.Response(200, json={"login": "tester"})
            if request.method == "GET":
                if path.endswith("src/App.jsx"):
                    return httpx.Response(200, json={"sha": "abc123"})
                return httpx.Response(404)
            puts[path] = json.loads(request.content)
            return httpx.Response(201, json={})

        client = _client_with(handler)
        ok = await client.commit_files(
            "todo-1", {"src/App.jsx": "app", "src/index.css": "css"}, "Update"
        )

        assert ok is True
        app = puts["/repos/tester/todo-1/contents/src/App.jsx"]
        css = puts["/repos/tester/todo-1/contents/src/index.css"]
        assert app["sha"] == "abc123"
        assert "sha" not in css
        assert base64.b64decode(app["content"]).decode() == "app"

    @pytest.mark.asyncio
    async def test_commit_reports_partial_failure(self):
        def handler(request):
            if request.url.path == "/user":
                return httpx.Response(200, json={"login": "tester"})
            if request.method == "GET":
                return httpx.Response(404)
            return httpx.Response(409, text="conflict")

        client = _client_with(handler)
        assert await client.commit_files("todo-1", {"a.js": "1"}, "Update") is False

    @pytest.mark.asyncio
    async def test_bad_token_raises(self):
        client = _client_with(lambda request: httpx.Response(401))

        with pytest.raises(MirrorError):
            await client.commit_files("todo-1", {"a.js": "1"}, "Update")


class TestNaming:
    def test_repo_name_slug(self):
        assert repo_name_for("Build a Todo App!", now=1.5) == "build-a-todo-app-1500"
        assert repo_name_for("???", now=2) == "generated-app-2000"

    def test_commit_messages(self):
        assert commit_message_for("Build a todo app", [], False) == "Initial commit - Build a todo app"
        changed = [f"f{i}.js" for i in range(7)]
        assert commit_message_for("x", changed, True) == (
            "Update f0.js, f1.js, f2.js, f3.js, f4.js (+2 more)"
        )


class TestMirrorService:
    """Tests for MirrorService."""

    @pytest.mark.asyncio
    async def test_disabled_without_client(self):
        service = MirrorService(None)

        assert service.enabled is False
        assert await service.ensure_repository("default", "x") is None
        assert await service.commit("default", {"a.js": "1"}, "m") is False

    @pytest.mark.asyncio
    async def test_repository_created_once_per_project(self):
        fake = FakeMirrorClient()
        service = MirrorService(fake)

        first = await service.ensure_repository("default", "Build a todo app")
        second = await service.ensure_repository("default", "Make it blue")
        await service.ensure_repository("other", "Weather app")

        assert first == second
        assert len(fake.repos) == 2
        assert first.repo_url.startswith("https://github.com/tester/build-a-todo-app-")

    @pytest.mark.asyncio
    async def test_commit_targets_project_repository(self):
        fake = FakeMirrorClient()
        service = MirrorService(fake)
        target = await service.ensure_repository("default", "Build a todo app")

        assert await service.commit("default", {"a.js": "1"}, "Initial commit") is True
        assert await service.commit("default", {}, "empty") is False
        assert fake.commits == [(target.repo_name, {"a.js": "1"}, "Initial commit")]
