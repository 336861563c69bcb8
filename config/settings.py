from pydantic_settings import BaseSettings, SettingsConfigDict

LAMPORTS_PER_SOL = 1_000_000_000


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    # Solana RPC
    solana_rpc_url: str = "https://api.mainnet-beta.solana.com"
    rpc_timeout_sec: float = 30.0

    # Market mill program
    program_id: str = ""
    config_account: str = ""

    # Signer for submitted transactions. NEVER LOG THIS
    wallet_private_key: str = ""

    # Migration
    migration_threshold_lamports: int = 60_000 * LAMPORTS_PER_SOL  # 60k SOL of buybacks
    creator_bonus_lamports: int = 200 * LAMPORTS_PER_SOL  # paid to creator on migration
    max_forwarded_accounts: int = 32

    # Fee shares (basis points)
    protocol_fee_share_bps: int = 100  # 1% of every buy
    referral_fee_share_bps: int = 2000  # 20% of the protocol fee
    creator_fee_share_bps: int = 50

    # Confirmation polling
    confirm_poll_interval_sec: float = 2.0
    confirm_timeout_sec: int = 60
    resend_interval_sec: float = 4.0
    max_send_retries: int = 2

    # Logging
    log_level: str = "INFO"
    log_dir: str = "logs"
    json_logs: bool = False


settings = Settings()
