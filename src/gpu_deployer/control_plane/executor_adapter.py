"""
Marketplace Executor Adapter

Bridges the control plane with the Akash marketplace CLI.
Handles argument shapes for each lifecycle step and maps CLI output
back into control plane types.
"""
import json
import logging
from typing import Dict, List, Optional

from ..config import DeployerSettings
from .command_executor import CommandExecutor
from .models import Lease

logger = logging.getLogger(__name__)


def parse_leases(raw: str) -> List[Lease]:
    """
    Parse ``query market lease list --output json`` output.

    Accepts both ``lease.id`` and ``lease.lease_id`` shapes. Malformed
    output yields no leases; the caller treats that as a polling miss.
    """
    try:
        data = json.loads(raw) if raw else {}
    except ValueError:
        return []
    if not isinstance(data, dict):
        return []

    leases = []
    for entry in data.get("leases") or []:
        if not isinstance(entry, dict):
            continue
        lease = entry.get("lease")
        if not isinstance(lease, dict):
            continue
        lease_id = lease.get("id") or lease.get("lease_id")
        if not isinstance(lease_id, dict) or not lease_id.get("provider"):
            continue
        try:
            leases.append(Lease(
                gseq=int(lease_id.get("gseq", 0)),
                oseq=int(lease_id.get("oseq", 0)),
                provider=str(lease_id["provider"]),
            ))
        except (TypeError, ValueError):
            continue
    return leases


def first_service_uri(raw: str) -> Optional[str]:
    """Return the first published URI of the first service in a lease status."""
    try:
        data = json.loads(raw) if raw else {}
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None

    services = data.get("services")
    if not isinstance(services, dict) or not services:
        return None
    service = next(iter(services.values()))
    if not isinstance(service, dict):
        return None
    uris = service.get("uris") or []
    return uris[0] if uris else None


class MarketplaceAdapter:
    """
    Adapter between the control plane and the marketplace CLI.

    Responsibilities:
    1. Build the argument list for each lifecycle command
    2. Pass node, chain and keyring as environment overrides
    3. Parse JSON output into control plane types
    """

    def __init__(self, executor: CommandExecutor, settings: DeployerSettings):
        self.executor = executor
        self.settings = settings

    def _env(self) -> Dict[str, str]:
        return {
            "AKASH_NODE": self.settings.akash_node,
            "AKASH_CHAIN_ID": self.settings.akash_chain,
            "AKASH_KEYRING_BACKEND": self.settings.keyring_backend,
        }

    async def _run(self, *args: str, input: Optional[str] = None) -> str:
        return await self.executor.execute(
            self.settings.akash_binary, list(args), env=self._env(), input=input
        )

    def _tx_flags(self) -> List[str]:
        s = self.settings
        return [
            "--from", s.akash_from, "--keyring-backend", s.keyring_backend,
            "--node", s.akash_node, "--chain-id", s.akash_chain,
        ]

    async def show_key(self) -> str:
        """Get the signing account address."""
        out = await self._run(
            "keys", "show", self.settings.akash_from, "-a",
            "--keyring-backend", self.settings.keyring_backend,
        )
        return out.strip()

    async def import_key(self, mnemonic: str) -> None:
        """Recover the signing key from a mnemonic fed on stdin."""
        await self._run(
            "keys", "add", self.settings.akash_from, "--recover",
            "--keyring-backend", self.settings.keyring_backend,
            input=mnemonic.strip() + "\n",
        )
        logger.info(f"Imported signing key {self.settings.akash_from}")

    async def create_deployment(self, sdl_path: str) -> str:
        return await self._run(
            "tx", "deployment", "create", sdl_path,
            *self._tx_flags(),
            "--deposit", self.settings.min_deposit, "--yes",
        )

    async def list_leases(self, owner: str, dseq: str) -> List[Lease]:
        out = await self._run(
            "query", "market", "lease", "list",
            "--owner", owner, "--dseq", dseq,
            "--node", self.settings.akash_node, "--output", "json",
        )
        return parse_leases(out)

    def _lease_flags(self, dseq: str, lease: Lease, owner: str) -> List[str]:
        return [
            "--node", self.settings.akash_node,
            "--dseq", dseq, "--gseq", str(lease.gseq), "--oseq", str(lease.oseq),
            "--owner", owner, "--provider", lease.provider,
        ]

    async def send_manifest(self, sdl_path: str, dseq: str, lease: Lease, owner: str) -> str:
        return await self._run(
            "provider", "send-manifest", sdl_path,
            *self._lease_flags(dseq, lease, owner),
        )

    async def lease_status(self, dseq: str, lease: Lease, owner: str) -> Optional[str]:
        """Query lease status and return the first service URI, if any."""
        out = await self._run(
            "provider", "lease-status",
            *self._lease_flags(dseq, lease, owner),
            "--output", "json",
        )
        return first_service_uri(out)

    async def close_deployment(self, owner: str, dseq: str) -> str:
        return await self._run(
            "tx", "deployment", "close",
            "--owner", owner, "--dseq", dseq,
            *self._tx_flags(),
            "--yes",
        )
