"""
Heritage service backends.

HeritageServiceClient speaks to the REST API with httpx. ServiceObserver (for
wallets) and ServiceHeritageProvider (for heir-wallets) bind a stored entity to
the remote wallet or heritages it mirrors.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

import httpx
from loguru import logger
from pydantic import BaseModel

from heritage_cli.backends.base import ChainObserver, HeritageProvider
from heritage_cli.config import ServiceConfig
from heritage_cli.errors import (
    BackendError,
    CapabilityMismatchError,
    EntityNotFoundError,
    Unauthenticated,
    UnreachableProvider,
)
from heritage_cli.models import (
    AccountXPub,
    AccountXPubWithStatus,
    Fingerprint,
    InheritanceRecord,
    TransactionRequest,
    TransactionSummary,
    Utxo,
    WalletStatus,
)

if TYPE_CHECKING:
    from heritage_cli.store import Database

DEFAULT_TIMEOUT = 30.0
TOKENS_KEY = "tokens"

# Refresh the access token when it expires within this many seconds
TOKEN_EXPIRY_MARGIN = 60


class Tokens(BaseModel):
    access_token: str
    refresh_token: str | None = None
    expires_at: int

    def is_expired(self, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return self.expires_at - TOKEN_EXPIRY_MARGIN <= now

    @classmethod
    def load(cls, db: Database) -> Tokens | None:
        data = db.get_item(TOKENS_KEY)
        return cls(**data) if data else None

    def save(self, db: Database) -> None:
        db.set_item(TOKENS_KEY, self.model_dump())

    @staticmethod
    def clear(db: Database) -> bool:
        return db.delete_item(TOKENS_KEY)


class DeviceAuthorization(BaseModel):
    device_code: str
    user_code: str
    verification_uri: str
    expires_in: int = 600
    interval: int = 5

    @property
    def verification_uri_complete(self) -> str:
        return f"{self.verification_uri}?user_code={self.user_code}"

    @property
    def human_user_code(self) -> str:
        return f"{self.user_code[:4]}-{self.user_code[4:]}"


def _json_body(response: httpx.Response, what: str) -> Any:
    try:
        return response.json()
    except ValueError as e:
        raise BackendError(
            f"Unexpected answer from the {what} (HTTP {response.status_code}): not JSON"
        ) from e


class HeritageServiceClient:
    """
    REST client for the Heritage service.

    Never logs in by itself: calls made without valid tokens fail with
    Unauthenticated. Expired tokens are refreshed when a refresh token exists.
    """

    def __init__(
        self,
        config: ServiceConfig,
        tokens: Tokens | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config
        self.tokens = tokens
        self.client = httpx.AsyncClient(timeout=DEFAULT_TIMEOUT, transport=transport)
        self._tokens_changed = False

    async def close(self) -> None:
        await self.client.aclose()

    def persist_tokens(self, db: Database) -> None:
        if self.tokens is not None and self._tokens_changed:
            self.tokens.save(db)
            self._tokens_changed = False

    # Authentication

    def _set_tokens(self, data: dict[str, Any]) -> None:
        self.tokens = Tokens(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token")
            or (self.tokens.refresh_token if self.tokens else None),
            expires_at=int(time.time()) + int(data.get("expires_in", 3600)),
        )
        self._tokens_changed = True

    async def _auth_post(self, endpoint: str, data: dict[str, str]) -> httpx.Response:
        url = f"{self.config.auth_url.rstrip('/')}/{endpoint}"
        try:
            return await self.client.post(url, data=data)
        except httpx.HTTPError as e:
            raise UnreachableProvider(f"Authentication endpoint unreachable: {e}") from e

    async def login(
        self,
        on_device_code: Callable[[DeviceAuthorization], Awaitable[None] | None],
    ) -> None:
        """OAuth device authorization flow, polling until the user approves."""
        response = await self._auth_post(
            "device_authorization", {"client_id": self.config.auth_client_id}
        )
        if response.status_code != 200:
            raise BackendError(f"Device authorization failed: {response.text}")
        device = DeviceAuthorization(**_json_body(response, "authentication endpoint"))

        pending = on_device_code(device)
        if pending is not None:
            await pending

        interval = device.interval
        deadline = time.monotonic() + device.expires_in
        while time.monotonic() < deadline:
            await asyncio.sleep(interval)
            response = await self._auth_post(
                "token",
                {
                    "grant_type": "urn:ietf:params:oauth:grant-type:device_code",
                    "device_code": device.device_code,
                    "client_id": self.config.auth_client_id,
                },
            )
            if response.status_code == 200:
                self._set_tokens(_json_body(response, "authentication endpoint"))
                logger.info("Login successful")
                return
            try:
                body = response.json()
            except ValueError:
                body = None
            error = body.get("error") if isinstance(body, dict) else None
            if error is None:
                raise Unauthenticated(f"Login failed: HTTP {response.status_code}")
            if error == "slow_down":
                interval += 5
            elif error != "authorization_pending":
                raise Unauthenticated(f"Login failed: {error}")
        raise Unauthenticated("Login timed out: the connection was not approved")

    async def logout(self) -> None:
        self.tokens = None
        self._tokens_changed = False

    async def _refresh(self) -> None:
        assert self.tokens is not None
        if self.tokens.refresh_token is None:
            raise Unauthenticated("Session expired, please login again")
        response = await self._auth_post(
            "token",
            {
                "grant_type": "refresh_token",
                "refresh_token": self.tokens.refresh_token,
                "client_id": self.config.auth_client_id,
            },
        )
        if response.status_code != 200:
            raise Unauthenticated("Session expired, please login again")
        self._set_tokens(_json_body(response, "authentication endpoint"))
        logger.debug("Access token refreshed")

    # API calls

    async def _request(self, method: str, path: str, json: Any = None) -> Any:
        if self.tokens is None:
            raise Unauthenticated()
        if self.tokens.is_expired():
            await self._refresh()
        assert self.tokens is not None

        url = f"{self.config.service_api_url.rstrip('/')}/{path.lstrip('/')}"
        headers = {"Authorization": f"Bearer {self.tokens.access_token}"}
        try:
            response = await self.client.request(method, url, json=json, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"Heritage service call failed: {method} {path} - {e}")
            raise UnreachableProvider(f"Heritage service unreachable: {e}") from e

        if response.status_code == 401:
            raise Unauthenticated()
        if response.status_code == 404:
            raise BackendError(f"Not found on the Heritage service: {path}")
        if response.is_error:
            raise BackendError(f"Heritage service error {response.status_code}: {response.text}")
        return _json_body(response, "Heritage service") if response.content else None

    async def list_wallets(self) -> list[dict[str, Any]]:
        return await self._request("GET", "/wallets")

    async def get_wallet(self, wallet_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/wallets/{wallet_id}")

    async def create_wallet(
        self, name: str, backup: list[dict] | None, block_inclusion_objective: int
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "name": name,
            "block_inclusion_objective": block_inclusion_objective,
        }
        if backup is not None:
            body["backup"] = backup
        return await self._request("POST", "/wallets", json=body)

    async def update_wallet(self, wallet_id: str, **changes: Any) -> dict[str, Any]:
        body = {k: v for k, v in changes.items() if v is not None}
        return await self._request("PATCH", f"/wallets/{wallet_id}", json=body)

    async def synchronize_wallet(self, wallet_id: str) -> None:
        await self._request("POST", f"/wallets/{wallet_id}/synchronize")

    async def new_address(self, wallet_id: str) -> str:
        data = await self._request("POST", f"/wallets/{wallet_id}/addresses")
        return data["address"]

    async def list_addresses(self, wallet_id: str) -> list[dict[str, Any]]:
        return await self._request("GET", f"/wallets/{wallet_id}/addresses")

    async def list_transactions(self, wallet_id: str) -> list[dict[str, Any]]:
        return await self._request("GET", f"/wallets/{wallet_id}/tx-summaries")

    async def list_utxos(self, wallet_id: str) -> list[dict[str, Any]]:
        return await self._request("GET", f"/wallets/{wallet_id}/heritage-utxos")

    async def descriptors_backup(self, wallet_id: str) -> list[dict[str, Any]]:
        return await self._request("GET", f"/wallets/{wallet_id}/descriptors-backup")

    async def list_account_xpubs(self, wallet_id: str) -> list[dict[str, Any]]:
        return await self._request("GET", f"/wallets/{wallet_id}/account-xpubs")

    async def post_account_xpubs(self, wallet_id: str, xpubs: list[str]) -> None:
        await self._request("POST", f"/wallets/{wallet_id}/account-xpubs", json=xpubs)

    async def create_unsigned_tx(self, wallet_id: str, body: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", f"/wallets/{wallet_id}/create-unsigned-tx", json=body)

    async def list_heritages(self) -> list[dict[str, Any]]:
        return await self._request("GET", "/heritages")

    async def create_heritage_unsigned_tx(
        self, heritage_id: str, drain_to: str
    ) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"/heritages/{heritage_id}/create-unsigned-tx",
            json={"drain_to": drain_to},
        )

    async def broadcast(self, psbt: str) -> str:
        data = await self._request("POST", "/broadcast", json={"psbt": psbt})
        return data["txid"]


def _summary(data: dict[str, Any]) -> tuple[str, TransactionSummary]:
    summary = data.get("summary", {})
    return data["psbt"], TransactionSummary(
        txid=summary.get("txid", ""),
        fee=summary.get("fee", 0),
        inputs=summary.get("inputs", []),
        outputs=summary.get("outputs", []),
        owned_fingerprints=summary.get("owned_fingerprints"),
    )


def _status(data: dict[str, Any]) -> WalletStatus:
    return WalletStatus(
        balance=data.get("balance", 0),
        block_inclusion_objective=data.get("block_inclusion_objective", 6),
        last_sync_ts=data.get("last_sync_ts"),
        fee_rate=data.get("fee_rate"),
    )


class ServiceObserver(ChainObserver):
    """A wallet whose online part lives in the Heritage service."""

    kind = "service"

    def __init__(self, wallet_id: str, fingerprint: Fingerprint | None = None):
        self.wallet_id = wallet_id
        self.fingerprint = fingerprint
        self.client: HeritageServiceClient | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ServiceObserver:
        return cls(wallet_id=data["wallet_id"], fingerprint=data.get("fingerprint"))

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "wallet_id": self.wallet_id, "fingerprint": self.fingerprint}

    def init_service_client(self, client: HeritageServiceClient) -> None:
        self.client = client

    @property
    def service(self) -> HeritageServiceClient:
        if self.client is None:
            raise Unauthenticated("Service client not initialized")
        return self.client

    def bound_fingerprint(self) -> Fingerprint | None:
        return self.fingerprint

    @classmethod
    async def create(
        cls,
        client: HeritageServiceClient,
        name: str,
        backup: list[dict] | None,
        block_inclusion_objective: int,
    ) -> ServiceObserver:
        data = await client.create_wallet(name, backup, block_inclusion_objective)
        observer = cls(data["id"], data.get("fingerprint"))
        observer.client = client
        return observer

    @classmethod
    async def bind(
        cls,
        client: HeritageServiceClient,
        name: str | None = None,
        fingerprint: Fingerprint | None = None,
        wallet_id: str | None = None,
    ) -> ServiceObserver:
        """Bind to an existing service wallet, by name, fingerprint or id."""
        if wallet_id is not None:
            data = await client.get_wallet(wallet_id)
        else:
            wallets = await client.list_wallets()
            if name is not None:
                matches = [w for w in wallets if w.get("name") == name]
            else:
                matches = [w for w in wallets if w.get("fingerprint") == fingerprint]
            if len(matches) != 1:
                what = name if name is not None else f"fingerprint {fingerprint}"
                if not matches:
                    raise EntityNotFoundError("service wallet", str(what))
                raise BackendError(f"Several service wallets match {what}")
            data = matches[0]
        observer = cls(data["id"], data.get("fingerprint"))
        observer.client = client
        return observer

    async def sync(self) -> None:
        await self.service.synchronize_wallet(self.wallet_id)

    async def get_address(self) -> str:
        return await self.service.new_address(self.wallet_id)

    async def list_addresses(self) -> list[dict[str, Any]]:
        return await self.service.list_addresses(self.wallet_id)

    async def list_transactions(self) -> list[dict[str, Any]]:
        return await self.service.list_transactions(self.wallet_id)

    async def list_utxos(self) -> list[Utxo]:
        return [
            Utxo(
                txid=u["outpoint"].split(":")[0],
                vout=int(u["outpoint"].split(":")[1]),
                value=u["amount"],
                address=u.get("address", ""),
                confirmations=u.get("confirmations", 0),
                height=(u.get("confirmation_time") or {}).get("height"),
            )
            for u in await self.service.list_utxos(self.wallet_id)
        ]

    async def get_wallet_status(self) -> WalletStatus:
        return _status(await self.service.get_wallet(self.wallet_id))

    async def set_block_inclusion_objective(self, value: int) -> WalletStatus:
        data = await self.service.update_wallet(self.wallet_id, block_inclusion_objective=value)
        return _status(data)

    async def create_psbt(self, request: TransactionRequest) -> tuple[str, TransactionSummary]:
        return _summary(await self.service.create_unsigned_tx(self.wallet_id, request.to_api()))

    async def broadcast(self, psbt: str) -> str:
        return await self.service.broadcast(psbt)

    async def backup_descriptors(self) -> list[dict[str, Any]]:
        return await self.service.descriptors_backup(self.wallet_id)

    async def list_account_xpubs(self) -> list[AccountXPubWithStatus]:
        return [
            AccountXPubWithStatus(
                xpub=AccountXPub.parse(entry["account_xpub"]), used=entry["used"]
            )
            for entry in await self.service.list_account_xpubs(self.wallet_id)
        ]

    async def feed_account_xpubs(self, xpubs: list[AccountXPub]) -> None:
        await self.service.post_account_xpubs(self.wallet_id, [x.value for x in xpubs])

    async def rename(self, new_name: str) -> None:
        await self.service.update_wallet(self.wallet_id, name=new_name)


class ServiceHeritageProvider(HeritageProvider):
    """Heritages of the heir identified by `fingerprint`, as seen by the service."""

    kind = "service"

    def __init__(self, fingerprint: Fingerprint):
        self.fingerprint = fingerprint
        self.client: HeritageServiceClient | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ServiceHeritageProvider:
        return cls(fingerprint=data["fingerprint"])

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "fingerprint": self.fingerprint}

    def init_service_client(self, client: HeritageServiceClient) -> None:
        self.client = client

    @property
    def service(self) -> HeritageServiceClient:
        if self.client is None:
            raise Unauthenticated("Service client not initialized")
        return self.client

    async def list_heritages(self) -> list[InheritanceRecord]:
        records = []
        for heritage in await self.service.list_heritages():
            if heritage.get("heir_fingerprint") not in (None, self.fingerprint):
                continue
            records.append(
                InheritanceRecord(
                    claim_id=heritage["heritage_id"],
                    value=heritage["value"],
                    maturity=heritage["maturity"],
                    next_heir_maturity=heritage.get("next_heir_maturity"),
                )
            )
        return records

    async def create_psbt(self, claim_id: str, recipient: str) -> tuple[str, TransactionSummary]:
        return _summary(await self.service.create_heritage_unsigned_tx(claim_id, recipient))

    async def sync(self) -> None:
        raise CapabilityMismatchError("Only a local heritage-provider can be synchronized")

    async def broadcast(self, psbt: str) -> str:
        return await self.service.broadcast(psbt)
