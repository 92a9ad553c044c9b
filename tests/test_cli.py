"""Tests for the convergectl CLI."""

import json

import httpx
import pytest
from click.testing import CliRunner
from fastapi.testclient import TestClient

from converge_kernel.api.app import create_app
from converge_kernel.cli import main
from converge_kernel.execution.adapter import AdapterRegistry, InMemoryProvisioner
from converge_kernel.models.resources import ResourceRef

APP_MANIFEST = """
kind: Application
metadata: {name: api, namespace: shop}
spec:
  body: {image: "api:1"}
---
kind: Application
metadata: {name: web, namespace: shop}
spec:
  body: {image: "web:1"}
  depends_on: [api]
"""

API = "Application/shop/api"
WEB = "Application/shop/web"


@pytest.fixture
def provisioner():
    return InMemoryProvisioner()


@pytest.fixture
def client(provisioner):
    return TestClient(create_app(adapters=AdapterRegistry(provisioner)))


@pytest.fixture
def runner():
    return CliRunner()


def _invoke(runner, client, *args):
    return runner.invoke(main, list(args), obj={"client": client, "server": "test"})


def _deploy(runner, client, tmp_path):
    (tmp_path / "apps.yaml").write_text(APP_MANIFEST)
    result = _invoke(runner, client, "ingest", str(tmp_path), "--commit", "abc")
    assert result.exit_code == 0, result.output
    for _ in range(5):
        client.post("/reconciler/trigger")
    return result


class TestIngestCommand:
    def test_ingest_directory(self, runner, client, tmp_path):
        result = _deploy(runner, client, tmp_path)
        assert "✓ Revision 1 (abc): 2 resources, 0 removed" in result.output

    def test_ingest_bad_manifest(self, runner, client, tmp_path):
        (tmp_path / "bad.yaml").write_text("kind: [")
        result = _invoke(runner, client, "ingest", str(tmp_path))
        assert result.exit_code == 2
        assert "ManifestError" in result.output


class TestStatusCommand:
    def test_table(self, runner, client, tmp_path):
        _deploy(runner, client, tmp_path)
        result = _invoke(runner, client, "status")
        assert result.exit_code == 0
        lines = result.output.strip().splitlines()
        assert lines[0].split() == ["WAVE", "PHASE", "SYNC", "OBSERVED", "UNIT"]
        assert API in lines[1]
        assert WEB in lines[2]
        assert "Healthy" in lines[2]

    def test_empty(self, runner, client):
        result = _invoke(runner, client, "status")
        assert result.output.strip() == "No units."

    def test_single_unit(self, runner, client, tmp_path):
        _deploy(runner, client, tmp_path)
        result = _invoke(runner, client, "status", WEB)
        assert result.exit_code == 0
        assert "Phase:       Healthy" in result.output
        assert f"Depends on:  {API}" in result.output

    def test_json(self, runner, client, tmp_path):
        _deploy(runner, client, tmp_path)
        result = _invoke(runner, client, "status", "--json")
        assert [u["id"] for u in json.loads(result.output)] == [API, WEB]

    def test_unknown_unit_exit_code(self, runner, client):
        result = _invoke(runner, client, "status", "Application/shop/ghost")
        assert result.exit_code == 8
        assert "UnitNotFoundError" in result.output


class TestOperatorCommands:
    def test_diff_in_sync(self, runner, client, tmp_path):
        _deploy(runner, client, tmp_path)
        result = _invoke(runner, client, "diff", API)
        assert result.exit_code == 0
        assert f"✓ {API} is in sync" in result.output

    def test_diff_drifted_then_sync(self, runner, client, provisioner, tmp_path):
        _deploy(runner, client, tmp_path)
        provisioner.mutate(ResourceRef.parse(API), "image", "api:hacked")

        result = _invoke(runner, client, "diff", API)
        assert result.exit_code == 7
        assert "differs at:" in result.output
        assert "api:hacked" in result.output

        result = _invoke(runner, client, "sync", API)
        assert result.exit_code == 0
        assert f"✓ Sync requested for {API}: Healthy" in result.output
        assert _invoke(runner, client, "diff", API).exit_code == 0

    def test_delete_cascades(self, runner, client, provisioner, tmp_path):
        _deploy(runner, client, tmp_path)
        result = _invoke(runner, client, "delete", API)
        assert result.exit_code == 0
        assert f"✓ {API}: Deleted" in result.output
        assert f"also deleting {WEB}" in result.output
        assert not provisioner.exists(ResourceRef.parse(WEB))

    def test_revisions_and_rollback(self, runner, client, tmp_path):
        _deploy(runner, client, tmp_path)
        (tmp_path / "apps.yaml").write_text(APP_MANIFEST.replace("api:1", "api:2"))
        _invoke(runner, client, "ingest", str(tmp_path))

        result = _invoke(runner, client, "rollback", "1")
        assert result.exit_code == 0
        assert "✓ Rolled back to 1 as revision 3" in result.output

        result = _invoke(runner, client, "revisions")
        lines = result.output.strip().splitlines()
        assert len(lines) == 3
        assert lines[2].endswith("(rollback of 1)")

    def test_unreachable_server(self, runner):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = httpx.Client(base_url="http://kernel", transport=httpx.MockTransport(refuse))
        result = _invoke(runner, client, "status")
        assert result.exit_code == 1
        assert "Cannot reach" in result.output
