from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    okx_api_key: Optional[str] = Field(default=None, alias="OKX_API_KEY")
    okx_secret_key: Optional[str] = Field(default=None, alias="OKX_SECRET_KEY")
    okx_passphrase: Optional[str] = Field(default=None, alias="OKX_PASSPHRASE")
    okx_api_flag: str = Field(default="0", alias="OKX_API_FLAG")
    okx_sub_account: Optional[str] = Field(default=None, alias="OKX_SUB_ACCOUNT")
    okx_pos_mode: Literal["net", "long_short"] = Field(default="net", alias="OKX_POS_MODE")
    redis_url: Optional[str] = Field(default=None, alias="REDIS_URL")
    position_poll_interval: int = Field(default=5, alias="POSITION_POLL_INTERVAL", ge=1)
    venue_timeout_seconds: float = Field(default=10.0, alias="VENUE_TIMEOUT_SECONDS", gt=0)
    tpsl_trigger_px_type: Literal["last", "mark", "index"] = Field(default="last", alias="TPSL_TRIGGER_PX_TYPE")
    tpsl_max_price_deviation: float = Field(default=0.9, alias="TPSL_MAX_PRICE_DEVIATION", gt=0, lt=1)
    trading_pairs_raw: str = Field(default="BTC-USDT-SWAP", alias="TRADING_PAIRS")

    @property
    def trading_pairs(self) -> list[str]:
        raw = self.trading_pairs_raw
        if isinstance(raw, str):
            pairs = [item.strip().upper() for item in raw.split(",") if item.strip()]
        elif isinstance(raw, (list, tuple)):
            pairs = [str(item).strip().upper() for item in raw if str(item).strip()]
        else:
            pairs = []
        return pairs or ["BTC-USDT-SWAP"]

    @property
    def has_okx_credentials(self) -> bool:
        return bool(self.okx_api_key and self.okx_secret_key and self.okx_passphrase)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
