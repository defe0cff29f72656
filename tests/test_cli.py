import json

from click.testing import CliRunner

from budgetsync import cli as cli_module
from budgetsync.client.local_store import MemoryLocalStore
from budgetsync.client.sync_client import SyncClient
from budgetsync.errors import NotFoundError


class StubTransport:
    def __init__(self, data=None):
        self.data = data or {}

    async def post(self, body):
        if body["action"] == "save":
            self.data[body["dataType"]] = body["data"]
            return {"success": True, "message": "Data saved successfully"}
        if body["dataType"] not in self.data:
            raise NotFoundError("No data found for this user")
        return self.data[body["dataType"]]

    async def aclose(self):
        pass


def patch_client(monkeypatch, transport, local=None):
    monkeypatch.setattr(
        cli_module,
        "build_sync_client",
        lambda settings, base_url=None: SyncClient(transport, local or MemoryLocalStore()),
    )


def test_fetch_prints_payload(monkeypatch):
    patch_client(monkeypatch, StubTransport({"categories": ["Food"]}))
    result = CliRunner().invoke(cli_module.cli, ["fetch", "9876543210", "--data-type", "categories"])
    assert result.exit_code == 0
    assert json.loads(result.stdout) == ["Food"]


def test_fetch_missing_exits_nonzero(monkeypatch):
    patch_client(monkeypatch, StubTransport())
    result = CliRunner().invoke(cli_module.cli, ["fetch", "9876543210"])
    assert result.exit_code == 1


def test_save_rejects_invalid_json(monkeypatch):
    patch_client(monkeypatch, StubTransport())
    result = CliRunner().invoke(cli_module.cli, ["save", "9876543210", "{not json"])
    assert result.exit_code == 2
    assert "Invalid JSON" in result.output


def test_save_sends_document(monkeypatch):
    transport = StubTransport()
    patch_client(monkeypatch, transport)
    result = CliRunner().invoke(cli_module.cli, ["save", "9876543210", '{"amount": 5}', "--data-type", "monthlyBudget"])
    assert result.exit_code == 0
    assert transport.data["monthlyBudget"] == {"amount": 5}


def test_migrate_reports_items(monkeypatch):
    transport = StubTransport()
    local = MemoryLocalStore({"transactions_9876543210": [{"amount": 1}]})
    patch_client(monkeypatch, transport, local)
    result = CliRunner().invoke(cli_module.cli, ["migrate", "9876543210"])
    assert result.exit_code == 0
    assert "transactions" in result.output

    result = CliRunner().invoke(cli_module.cli, ["migrate", "9876543210"])
    assert "Already migrated" in result.output
