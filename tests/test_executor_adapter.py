import asyncio
import json

import pytest

from gpu_deployer.control_plane.executor_adapter import MarketplaceAdapter, first_service_uri, parse_leases
from gpu_deployer.control_plane.models import Lease

from conftest import OWNER, PROVIDER, ScriptedExecutor, lease_list_json, lease_status_json


@pytest.mark.parametrize("shape", ["id", "lease_id"])
def test_parse_leases_accepts_both_shapes(shape) -> None:
    leases = parse_leases(lease_list_json("akash1other", PROVIDER, shape=shape))

    assert leases == [Lease(1, 1, "akash1other"), Lease(1, 1, PROVIDER)]


@pytest.mark.parametrize(
    "raw",
    [
        "",
        "not json",
        "[]",
        '{"leases": null}',
        '{"leases": ["x", {"lease": "y"}, {"lease": {"id": {"gseq": 1}}}]}',
        '{"leases": [{"lease": {"id": {"gseq": "one", "oseq": 1, "provider": "p"}}}]}',
    ],
)
def test_parse_leases_tolerates_malformed_output(raw) -> None:
    assert parse_leases(raw) == []


def test_first_service_uri() -> None:
    assert first_service_uri(lease_status_json("a.ingress.example", "b.ingress.example")) == "a.ingress.example"
    assert first_service_uri(lease_status_json()) is None
    assert first_service_uri(json.dumps({"services": {}})) is None
    assert first_service_uri("{broken") is None


def test_show_key_uses_keyring_and_env(make_settings) -> None:
    settings = make_settings(akash_from="deployer", keyring_backend="file", akash_node="https://rpc.x:443")
    executor = ScriptedExecutor({"keys show": f"{OWNER}\n"})

    address = asyncio.run(MarketplaceAdapter(executor, settings).show_key())

    call = executor.calls[0]
    assert address == OWNER
    assert call.command == "akash"
    assert call.args == ["keys", "show", "deployer", "-a", "--keyring-backend", "file"]
    assert call.env["AKASH_NODE"] == "https://rpc.x:443"
    assert call.env["AKASH_KEYRING_BACKEND"] == "file"


def test_import_key_feeds_mnemonic_on_stdin(make_settings) -> None:
    executor = ScriptedExecutor()
    mnemonic = "abandon ability able about above absent"

    asyncio.run(MarketplaceAdapter(executor, make_settings()).import_key(f"  {mnemonic} "))

    call = executor.calls[0]
    assert call.input == mnemonic + "\n"
    assert "--recover" in call.args
    assert all(mnemonic not in arg for arg in call.args)
    assert all(mnemonic not in value for value in call.env.values())


def test_lease_commands_address_lease(make_settings) -> None:
    executor = ScriptedExecutor({"provider lease-status": lease_status_json("gpu.example")})
    adapter = MarketplaceAdapter(executor, make_settings())
    lease = Lease(gseq=2, oseq=3, provider=PROVIDER)

    async def scenario():
        await adapter.send_manifest("/tmp/42.yaml", "42", lease, OWNER)
        return await adapter.lease_status("42", lease, OWNER)

    uri = asyncio.run(scenario())

    assert uri == "gpu.example"
    manifest, status = executor.calls
    assert manifest.args[:3] == ["provider", "send-manifest", "/tmp/42.yaml"]
    for call in (manifest, status):
        args = call.args
        assert args[args.index("--gseq") + 1] == "2"
        assert args[args.index("--oseq") + 1] == "3"
        assert args[args.index("--provider") + 1] == PROVIDER
        assert args[args.index("--owner") + 1] == OWNER


def test_create_and_close_carry_tx_flags(make_settings) -> None:
    settings = make_settings(min_deposit="7000000uakt", akash_chain="akashnet-2")
    executor = ScriptedExecutor()
    adapter = MarketplaceAdapter(executor, settings)

    async def scenario():
        await adapter.create_deployment("/tmp/9.yaml")
        await adapter.close_deployment(OWNER, "9")

    asyncio.run(scenario())

    create, close = executor.calls
    assert create.args[:4] == ["tx", "deployment", "create", "/tmp/9.yaml"]
    assert create.args[create.args.index("--deposit") + 1] == "7000000uakt"
    assert create.args[create.args.index("--chain-id") + 1] == "akashnet-2"
    assert close.args[:3] == ["tx", "deployment", "close"]
    assert close.args[close.args.index("--dseq") + 1] == "9"
    assert create.args[-1] == close.args[-1] == "--yes"
