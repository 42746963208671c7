import json
import os
from typing import Optional

from pydantic_settings import BaseSettings
from solders.keypair import Keypair

from errors import ConfigurationError


class Settings(BaseSettings):
    solana_rpc: str = "https://api.devnet.solana.com"
    helius_rpc_url: str = ""
    service_keypair_path: Optional[str] = None
    service_private_key: Optional[str] = None  # base58 secret, alternative to the keypair file
    app_env: str = "development"
    signature_verification_disabled: bool = False  # honoured only outside production
    confirmation_timeout_seconds: float = 30
    freepik_api_key: Optional[str] = None
    freepik_base_url: str = "https://api.freepik.com/v1/ai/mystic"
    image_poll_interval_seconds: float = 2.0
    image_poll_max_attempts: int = 60
    public_base_url: str = "http://localhost:3001"
    database_url: str = "sqlite:///./artmint.db"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def rpc_url(self) -> str:
        # Prefer Helius RPC if provided to improve reliability.
        return self.helius_rpc_url or self.solana_rpc


def load_keypair(path: str) -> Keypair:
    if not os.path.exists(path):
        raise ConfigurationError(f"Keypair file not found: {path}")
    try:
        with open(path, "r", encoding="utf-8") as fh:
            raw = json.load(fh)
    except Exception as exc:  # noqa: BLE001
        raise ConfigurationError(f"Failed to read keypair: {exc}") from exc
    if isinstance(raw, list):
        secret = bytes(raw)
    elif isinstance(raw, dict) and "secretKey" in raw:
        secret = bytes(raw["secretKey"])
    else:
        raise ConfigurationError("Unsupported keypair file format")
    try:
        return Keypair.from_bytes(secret)
    except Exception as exc:  # noqa: BLE001
        raise ConfigurationError(f"Failed to parse keypair: {exc}") from exc


def load_service_keypair(settings: Settings) -> Keypair:
    if settings.service_keypair_path:
        return load_keypair(settings.service_keypair_path)
    if settings.service_private_key:
        try:
            return Keypair.from_base58_string(settings.service_private_key)
        except Exception as exc:  # noqa: BLE001
            raise ConfigurationError(f"SERVICE_PRIVATE_KEY is not a valid keypair: {exc}") from exc
    raise ConfigurationError("SERVICE_KEYPAIR_PATH or SERVICE_PRIVATE_KEY must be configured")
