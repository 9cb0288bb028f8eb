"""REST queries against the Axelar LCD API with failover across base URLs."""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from valwatch.errors import ChainQueryError

logger = logging.getLogger(__name__)


class ChainQueryService:
    """
    Read-only chain queries.

    Each request tries the configured base URLs in order, starting from the
    last one that answered, and raises ``ChainQueryError`` once all of them
    have failed.
    """

    def __init__(
        self,
        base_urls: list[str],
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not base_urls:
            raise ValueError("ChainQueryService needs at least one base URL")
        self.base_urls = [url.rstrip("/") for url in base_urls]
        self._preferred = 0
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def close(self) -> None:
        await self.client.aclose()

    async def _get(self, path: str, params: Any = None) -> dict:
        errors = []
        count = len(self.base_urls)
        for offset in range(count):
            index = (self._preferred + offset) % count
            base_url = self.base_urls[index]
            try:
                logger.debug(f"GET {base_url}{path}")
                response = await self.client.get(f"{base_url}{path}", params=params)
                response.raise_for_status()
                data = response.json()
            except (httpx.HTTPError, ValueError) as e:
                logger.warning(f"LCD request to {base_url}{path} failed: {e}")
                errors.append(f"{base_url}: {e}")
                continue
            self._preferred = index
            return data
        raise ChainQueryError(f"All LCD endpoints failed for {path}: {'; '.join(errors)}")

    # -------------------------------------------------------------------------
    # Bank
    # -------------------------------------------------------------------------

    async def get_broadcaster_balance(self, address: str, denom: str = "uaxl") -> int:
        """Balance of ``address`` in ``denom`` base units."""
        data = await self._get(f"/cosmos/bank/v1beta1/balances/{address}/{denom}")
        try:
            return int(data["balance"]["amount"])
        except (KeyError, TypeError, ValueError) as e:
            raise ChainQueryError(f"Unexpected balance response for {address}: {data}") from e

    # -------------------------------------------------------------------------
    # Staking
    # -------------------------------------------------------------------------

    async def get_validators(self, status: str = "BOND_STATUS_BONDED") -> list[dict]:
        """All validators with the given bond status, following pagination."""
        validators: list[dict] = []
        next_key: Optional[str] = None
        while True:
            params = {"status": status, "pagination.limit": "200"}
            if next_key:
                params["pagination.key"] = next_key
            data = await self._get("/cosmos/staking/v1beta1/validators", params=params)
            validators.extend(data.get("validators") or [])
            next_key = (data.get("pagination") or {}).get("next_key")
            if not next_key:
                return validators

    async def get_validator_voter_address(self, operator_address: str) -> Optional[str]:
        """Proxy (voter and broadcaster) address registered by a validator."""
        params = [
            ("events", f"message.sender='{operator_address}'"),
            ("events", "message.action='RegisterProxy'"),
        ]
        data = await self._get("/cosmos/tx/v1beta1/txs", params=params)
        txs = data.get("txs") or []
        if not txs:
            logger.warning(f"No RegisterProxy tx found for {operator_address}")
            return None
        messages = (txs[0].get("body") or {}).get("messages") or []
        if not messages:
            logger.warning(f"No messages found for {operator_address}")
            return None
        return messages[0].get("proxy_addr")

    # -------------------------------------------------------------------------
    # Consensus
    # -------------------------------------------------------------------------

    async def get_validator_set(self) -> dict[str, str]:
        """Latest consensus validator set as ``{base64 pubkey: valcons address}``."""
        addresses: dict[str, str] = {}
        next_key: Optional[str] = None
        while True:
            params = {"pagination.limit": "200"}
            if next_key:
                params["pagination.key"] = next_key
            data = await self._get("/cosmos/base/tendermint/v1beta1/validatorsets/latest", params=params)
            for validator in data.get("validators") or []:
                key = (validator.get("pub_key") or {}).get("key")
                if key and validator.get("address"):
                    addresses[key] = validator["address"]
            next_key = (data.get("pagination") or {}).get("next_key")
            if not next_key:
                return addresses

    # -------------------------------------------------------------------------
    # Slashing
    # -------------------------------------------------------------------------

    async def get_validator_uptime(self, consensus_address: str) -> float:
        """Uptime percentage over the slashing signing window."""
        info = await self._get(f"/cosmos/slashing/v1beta1/signing_infos/{consensus_address}")
        params = await self._get("/cosmos/slashing/v1beta1/params")
        try:
            missed = int(info["val_signing_info"]["missed_blocks_counter"])
            window = int(params["params"]["signed_blocks_window"])
        except (KeyError, TypeError, ValueError) as e:
            raise ChainQueryError(f"Unexpected signing info for {consensus_address}: {e}") from e
        if window <= 0:
            raise ChainQueryError(f"Invalid signed blocks window {window}")
        return max(0.0, (1 - missed / window) * 100)

    # -------------------------------------------------------------------------
    # RPC health
    # -------------------------------------------------------------------------

    async def check_rpc_endpoint(self, url: str) -> bool:
        """True if the endpoint's ``/health`` answers 200. Never raises."""
        try:
            response = await self.client.get(f"{url.rstrip('/')}/health")
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.debug(f"RPC health check for {url} failed: {e}")
            return False
