# graintrust/config.py
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

from graintrust.models.domain import StagePolicy

FARMING_STAGES = [
    "Land Preparation",
    "Sowing",
    "Germination",
    "Vegetative Growth",
    "Flowering & Pollination",
    "Harvesting",
    "Post-Harvest Processing",
]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ================= DATABASE =================
    mongo_uri: str = "mongodb://localhost:27017"
    mongo_db_name: str = "graintrust_db"

    # ================= LEDGER BRIDGE =================
    fabric_bridge_url: str = "http://localhost:9000"
    channel_name: str = "graintrust"
    chaincode_name: str = "graincc"
    ledger_timeout_seconds: float = 15.0

    # ================= CREDENTIAL AUTHORITY =================
    fabric_ca_url: str = "http://localhost:7054"
    ca_timeout_seconds: float = 10.0
    msp_id: str = "FarmerOrgMSP"
    admin_identity_label: str = "admin"
    identity_affiliation: str = "org1.department1"
    identity_conflict_rechecks: int = 3
    identity_conflict_delay_seconds: float = 0.2

    # ================= COMPLETION POLICY =================
    stage_names: list[str] = FARMING_STAGES
    min_evidence_per_stage: int = 2

    # ================= AUTOMATION =================
    worker_pool_size: int = 4
    submission_lease_seconds: int = 300
    auto_submit: bool = True

    # ================= CERTIFICATES =================
    certificate_validity_days: int | None = None
    verification_base_url: str = "https://graintrust-verify.vercel.app"
    ipfs_gateway_url: str = "https://ipfs.io/ipfs/"

    # ================= LOGGING =================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["json", "console"] = "console"

    @property
    def stage_policy(self) -> StagePolicy:
        return StagePolicy(
            stage_names=tuple(self.stage_names),
            min_evidence_per_stage=self.min_evidence_per_stage,
        )


_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Reset settings (for testing)."""
    global _settings
    _settings = None
