"""
Tests for the worktree API routes
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from api.worktree_routes import get_worktree_manager, router
from aidp.worktree import WorktreeBranchManager


def make_client(project_dir, logger) -> TestClient:
    app = FastAPI()
    app.include_router(router)
    app.dependency_overrides[get_worktree_manager] = lambda: WorktreeBranchManager(
        project_dir=project_dir, logger=logger
    )
    return TestClient(app)


def test_router_routes():
    """Router exposes the worktree endpoints"""
    paths = {(tuple(sorted(route.methods)), route.path) for route in router.routes}

    assert (('GET',), '/api/worktrees') in paths
    assert (('GET',), '/api/worktrees/lookup') in paths
    assert (('POST',), '/api/worktrees') in paths
    assert (('DELETE',), '/api/worktrees') in paths
    assert (('GET',), '/api/pr-worktrees') in paths
    assert (('POST',), '/api/pr-worktrees') in paths
    assert (('DELETE',), '/api/pr-worktrees/{pr_number}') in paths


def test_manager_dependency_reads_project_env(tmp_path, monkeypatch):
    monkeypatch.setenv("AIDP_PROJECT_DIR", str(tmp_path))
    assert get_worktree_manager().project_dir == tmp_path.resolve()


class TestWorktreeEndpoints:
    """Test branch worktree endpoints against a real repository."""

    def test_create_lookup_list_delete(self, temp_git_repo, test_logger):
        print("\n=== Test: Worktree API Lifecycle ===")
        client = make_client(temp_git_repo, test_logger)

        response = client.post("/api/worktrees", json={"branch": "feature/api"})
        assert response.status_code == 200
        path = response.json()["path"]
        assert path.endswith("feature_api")

        response = client.get("/api/worktrees/lookup", params={"branch": "feature/api"})
        assert response.status_code == 200
        assert response.json()["path"] == path

        response = client.get("/api/worktrees")
        assert response.status_code == 200
        assert [wt["branch"] for wt in response.json()] == ["feature/api"]
        assert response.json()[0]["active"] is True

        response = client.delete("/api/worktrees", params={"branch": "feature/api"})
        assert response.status_code == 200

        response = client.delete("/api/worktrees", params={"branch": "feature/api"})
        assert response.status_code == 404
        print("[PASS]")

    def test_invalid_branch_is_bad_request(self, temp_git_repo, test_logger):
        client = make_client(temp_git_repo, test_logger)

        response = client.post("/api/worktrees", json={"branch": "../escape"})

        assert response.status_code == 400

    def test_lookup_missing_branch_is_not_found(self, temp_git_repo, test_logger):
        client = make_client(temp_git_repo, test_logger)

        response = client.get("/api/worktrees/lookup", params={"branch": "nothing-here"})

        assert response.status_code == 404

    def test_lookup_outside_repository_is_conflict(self, no_git_discovery, test_logger):
        client = make_client(no_git_discovery, test_logger)

        response = client.get("/api/worktrees/lookup", params={"branch": "main"})

        assert response.status_code == 409


class TestPrWorktreeEndpoints:
    """Test pull-request worktree endpoints."""

    def test_create_list_delete_pr_worktree(self, temp_git_repo, test_logger):
        client = make_client(temp_git_repo, test_logger)

        response = client.post("/api/pr-worktrees", json={"pr_number": 42, "head_branch": "topic"})
        assert response.status_code == 200
        assert response.json()["path"].endswith("topic-pr-42")

        listed = client.get("/api/pr-worktrees").json()
        assert listed[0]["pr_number"] == 42
        assert listed[0]["branch"] == "topic-pr-42"

        assert client.delete("/api/pr-worktrees/42").status_code == 200
        assert client.delete("/api/pr-worktrees/42").status_code == 404

    @pytest.mark.parametrize("payload", [
        {"pr_number": 0, "head_branch": "topic"},
        {"head_branch": "topic"},
    ])
    def test_invalid_pr_request_is_rejected(self, temp_git_repo, test_logger, payload):
        client = make_client(temp_git_repo, test_logger)

        response = client.post("/api/pr-worktrees", json=payload)

        assert response.status_code == 422

    def test_missing_base_branch_is_bad_request(self, temp_git_repo, test_logger):
        client = make_client(temp_git_repo, test_logger)

        response = client.post(
            "/api/pr-worktrees", json={"pr_number": 3, "head_branch": "topic", "base_branch": "missing"}
        )

        assert response.status_code == 400
