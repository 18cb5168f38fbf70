import json
from typing import Annotated, Dict
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict
from pydantic import Field, field_validator

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Application
    APP_NAME: str = "TradeMonitor"
    APP_VERSION: str = "1.0.0"
    LOG_LEVEL: str = "INFO"
    RUN_MODE: str = Field(default="CONSOLE", description="Execution Mode: CONSOLE, API")

    # Kraken (public ticker needs no credentials)
    KRAKEN_API_KEY: str = Field(default="", description="Kraken API Key")
    KRAKEN_API_SECRET: str = Field(default="", description="Kraken API Secret")
    KRAKEN_REST_URL: str = "https://api.kraken.com"
    HTTP_TIMEOUT: float = 10.0

    # Market Data: our symbol -> Kraken pair as it appears in ticker responses
    KRAKEN_PAIRS: Annotated[Dict[str, str], NoDecode] = Field(default={
        "BTC": "XXBTZUSD",
        "ETH": "XETHZUSD",
        "XRP": "XXRPZUSD",
        "LINK": "LINKUSD",
        "ALGO": "ALGOUSD",
        "BAT": "BATUSD",
    }, description="Tracked symbols mapped to Kraken pairs")

    # Scheduling
    SAMPLE_INTERVAL_SECONDS: float = 5.0
    BOUNDARY_INTERVAL_SECONDS: float = 1.0
    REJECT_NON_POSITIVE_PRICES: bool = True

    # Storage
    BARS_CSV_PATH: str = "prices.csv"
    ERROR_LOG_PATH: str = "errors.log"

    # Status API
    API_HOST: str = "127.0.0.1"
    API_PORT: int = 8000

    @field_validator("KRAKEN_PAIRS", mode="before")
    @classmethod
    def parse_pairs(cls, v):
        if isinstance(v, str) and v.strip().startswith("{"):
            return json.loads(v)
        if isinstance(v, str):
            # Handle comma-separated string: "BTC:XXBTZUSD,ETH:XETHZUSD"
            pairs = {}
            for item in v.split(","):
                if not item.strip():
                    continue
                symbol, _, pair = item.partition(":")
                pairs[symbol.strip()] = (pair or symbol).strip()
            return pairs
        return v

    @property
    def has_credentials(self) -> bool:
        return bool(self.KRAKEN_API_KEY and self.KRAKEN_API_SECRET)

settings = Settings()
