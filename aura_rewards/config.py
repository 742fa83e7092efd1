"""Application configuration and environment settings"""
from typing import List, Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Never written to logs
SENSITIVE_FIELDS = {'WALLET_PEPPER', 'MINTER_PRIVATE_KEY', 'TELEGRAM_BOT_TOKEN'}


class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = Field("sqlite:///data/aura_rewards.db", description="SQLAlchemy database URL")

    # Telegram
    TELEGRAM_BOT_TOKEN: Optional[str] = Field(default=None, description="Bot API token, also used to validate Mini App initData")
    ADMIN_USER_IDS: str = Field(default="", description="Comma separated Telegram user ids allowed to /tip")

    # Chain
    RPC_URL: str = Field("https://rpc.test.btcs.network", description="JSON-RPC endpoint of the chain")
    RPC_TIMEOUT_SECONDS: float = Field(15.0, description="Timeout applied to every JSON-RPC request")
    CONFIRMATION_TIMEOUT_SECONDS: float = Field(120.0, description="How long to wait for one confirmation")
    NATIVE_SYMBOL: str = Field("tCORE", description="Display symbol of the native currency")

    # Wallet derivation. Changing any of these re-derives every address and orphans funds.
    WALLET_PEPPER: str = Field(default="", description="Per-deployment secret mixed into key derivation")
    SIGNER_NAMESPACE: Optional[str] = Field(default=None, description="Override for the signing key namespace; defaults to the one of the wallet mode")
    SALT_NAMESPACE: str = Field(default="aura-farming-salt-", description="Namespace prefix for CREATE2 salts")
    SIMPLE_ACCOUNT_FACTORY_ADDRESS: Optional[str] = Field(default=None, description="Smart account factory; enables contract wallet metadata")

    # Tokens
    USDT_CONTRACT_ADDRESS: Optional[str] = Field(default=None, description="ERC-20 used for tips and USDT transfers")
    AURA_TOKEN_CONTRACT_ADDRESS: Optional[str] = Field(default=None, description="Reward token exposing mintChestReward")
    MINTER_PRIVATE_KEY: Optional[str] = Field(default=None, description="Key authorized to mint chest rewards")

    # Activity tracking
    ACTIVITY_FLUSH_INTERVAL_SECONDS: float = Field(30.0, description="Periodic flush interval of the activity buffer")
    ACTIVITY_MAX_BUFFERED_KEYS: int = Field(100, description="Distinct (user, chat) keys that trigger an immediate flush")
    TIMEZONE: str = Field("UTC", description="Deployment timezone for day and week boundaries")
    LEADERBOARD_LIMIT: int = Field(10, description="Default number of leaderboard rows")

    # Limits
    MAX_TIP_AMOUNT: float = Field(1000, description="Largest admin tip")
    MAX_TRANSFER_AMOUNT: float = Field(10000, description="Largest token transfer")
    CHEST_MAX_REWARD: int = Field(5, description="Upper bound (inclusive) of the daily chest draw")
    QUEST_HISTORY_LIMIT: int = Field(7, description="Days returned by quest history")

    # Mini App web server
    WEB_HOST: str = Field("0.0.0.0")
    WEB_PORT: int = Field(3000)
    WEB_APP_URL: Optional[str] = Field(default=None, description="Public URL of the Mini App")
    REQUIRE_INIT_DATA: bool = Field(False, description="Reject API calls without valid Telegram initData")

    LOG_LEVEL: str = Field("INFO")

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=True,
        extra='ignore'
    )

    @property
    def admin_ids(self) -> List[str]:
        return [x.strip() for x in self.ADMIN_USER_IDS.split(",") if x.strip()]

settings = Settings()
