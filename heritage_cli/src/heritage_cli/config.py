"""
Configuration management for the Heritage wallet CLI.

Environment and .env values are read through pydantic-settings. Blockchain
provider and service configuration can additionally be stored as defaults in
the database (`blockchain-provider --set`, `service config --set`).
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Literal

from pydantic import BaseModel, Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from heritage_cli.errors import InputValidationError
from heritage_cli.models import Network

if TYPE_CHECKING:
    from heritage_cli.store import Database

DEFAULT_DATADIR = Path.home() / ".heritage-wallet"

DEFAULT_SERVICE_API_URL = "https://api.btcherit.com/v1"
DEFAULT_AUTH_URL = "https://device.crypto7.world"
DEFAULT_AUTH_CLIENT_ID = "cda6031ca00d09d66c2b632448eb8fef"

# Database keys of the stored defaults
DEFAULT_PROVIDER_KEY = "default_bcpc"
SERVICE_CONFIG_KEY = "service_config"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )

    bitcoin_network: Network = Network.MAINNET
    heritage_datadir: Path = DEFAULT_DATADIR

    heritage_service_api_url: str | None = None
    heritage_auth_url: str | None = None
    heritage_auth_client_id: str | None = None

    heritage_log_level: str = "WARNING"

    # Dotted path ("package.module:Class") of the PSBT engine to load, if any
    heritage_psbt_engine: str | None = None

    # Hardware-wallet interface executable and device discovery timeout
    heritage_hwi_path: str = "hwi"
    heritage_hwi_timeout: float = 30.0


def get_settings() -> Settings:
    return Settings()


class ServiceConfig(BaseModel):
    """Heritage service endpoints."""

    service_api_url: str = DEFAULT_SERVICE_API_URL
    auth_url: str = DEFAULT_AUTH_URL
    auth_client_id: str = DEFAULT_AUTH_CLIENT_ID


# Blockchain providers


class CookieAuth(BaseModel):
    kind: Literal["cookie"] = "cookie"
    file: Path


class UserPassAuth(BaseModel):
    kind: Literal["userpass"] = "userpass"
    username: str
    password: str


Auth = Annotated[CookieAuth | UserPassAuth, Field(discriminator="kind")]


class ElectrumConfig(BaseModel):
    kind: Literal["electrum"] = "electrum"
    url: str = Field(..., min_length=1)


class BitcoinCoreConfig(BaseModel):
    kind: Literal["bitcoincore"] = "bitcoincore"
    url: str = Field(..., min_length=1)
    auth: Auth


ProviderConfig = Annotated[ElectrumConfig | BitcoinCoreConfig, Field(discriminator="kind")]


class _StoredProvider(BaseModel):
    config: ProviderConfig


DEFAULT_ELECTRUM_URLS = {
    Network.MAINNET: "ssl://electrum.blockstream.info:50002",
    Network.TESTNET: "ssl://electrum.blockstream.info:60002",
    Network.SIGNET: "ssl://mempool.space:60602",
    Network.REGTEST: "tcp://127.0.0.1:50001",
}


class BlockchainProviderArgs(BaseModel):
    """
    Blockchain provider flags as given on the command line.

    At most one provider may be selected, and Bitcoin Core needs either a
    cookie file or a username/password pair.
    """

    electrum_url: str | None = None
    bitcoincore_url: str | None = None
    auth_cookie: Path | None = None
    username: str | None = None
    password: str | None = None

    @model_validator(mode="after")
    def check_consistency(self) -> BlockchainProviderArgs:
        has_auth = self.auth_cookie is not None or self.username or self.password
        if self.electrum_url and self.bitcoincore_url:
            raise ValueError("--electrum-url and --bitcoincore-url cannot be used together")
        if self.electrum_url and has_auth:
            raise ValueError("Electrum does not take --auth-cookie, --username or --password")
        if self.auth_cookie is not None and (self.username or self.password):
            raise ValueError("--auth-cookie cannot be combined with --username/--password")
        if bool(self.username) != bool(self.password):
            raise ValueError("--username and --password must be given together")
        if self.bitcoincore_url and not has_auth:
            raise ValueError(
                "--bitcoincore-url requires --auth-cookie or --username and --password"
            )
        if has_auth and not self.bitcoincore_url:
            raise ValueError("Authentication options require --bitcoincore-url")
        return self

    def to_config(self) -> ElectrumConfig | BitcoinCoreConfig | None:
        if self.electrum_url:
            return ElectrumConfig(url=self.electrum_url)
        if self.bitcoincore_url:
            auth: CookieAuth | UserPassAuth
            if self.auth_cookie is not None:
                auth = CookieAuth(file=self.auth_cookie)
            else:
                assert self.username is not None and self.password is not None
                auth = UserPassAuth(username=self.username, password=self.password)
            return BitcoinCoreConfig(url=self.bitcoincore_url, auth=auth)
        return None


def parse_provider_args(**kwargs: object) -> BlockchainProviderArgs:
    try:
        return BlockchainProviderArgs(**kwargs)  # type: ignore[arg-type]
    except ValidationError as e:
        messages = "; ".join(err["msg"].removeprefix("Value error, ") for err in e.errors())
        raise InputValidationError(messages) from e


def default_provider_config(network: Network) -> ElectrumConfig:
    return ElectrumConfig(url=DEFAULT_ELECTRUM_URLS[network])


def resolve_provider_config(
    args: BlockchainProviderArgs, db: Database, network: Network
) -> ElectrumConfig | BitcoinCoreConfig:
    """Flags first, then the stored default, then the network default."""
    config = args.to_config()
    if config is not None:
        return config
    stored = db.get_item(DEFAULT_PROVIDER_KEY)
    if stored is not None:
        return _StoredProvider(config=stored).config
    return default_provider_config(network)


def store_provider_config(db: Database, config: ElectrumConfig | BitcoinCoreConfig) -> None:
    db.set_item(DEFAULT_PROVIDER_KEY, config.model_dump(mode="json"))


def resolve_service_config(
    db: Database,
    service_api_url: str | None = None,
    auth_url: str | None = None,
    auth_client_id: str | None = None,
) -> ServiceConfig:
    """
    Merge the service configuration.

    Explicit values (flags or environment) override the stored configuration,
    which overrides the built-in defaults.
    """
    stored = db.get_item(SERVICE_CONFIG_KEY)
    config = ServiceConfig(**stored) if stored else ServiceConfig()
    overrides = {
        "service_api_url": service_api_url,
        "auth_url": auth_url,
        "auth_client_id": auth_client_id,
    }
    return config.model_copy(update={k: v for k, v in overrides.items() if v is not None})


def store_service_config(db: Database, config: ServiceConfig) -> None:
    db.set_item(SERVICE_CONFIG_KEY, config.model_dump(mode="json"))
