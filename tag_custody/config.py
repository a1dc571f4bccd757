import logging

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    APP_NAME: str = "Tag Custody"
    DATABASE_URL: str = "sqlite:///./tag_custody.db"
    DATABASE_ECHO: bool = False

    # Seconds a SQLite writer waits for the database lock before failing
    SQLITE_BUSY_TIMEOUT: float = 30.0

    # Actor recorded on audit entries when the caller supplies none
    DEFAULT_ACTOR: str = "system"

    # Generated UIDs look like NFC-L100-0003
    NFC_UID_PREFIX: str = "NFC"
    TAG_UID_PREFIX: str = "TAG"
    UID_SEQUENCE_WIDTH: int = 4

    TRANSFER_ID_PREFIX: str = "TRF"

    # Hub is low on stock below max(total * LOW_STOCK_RATIO, LOW_STOCK_MIN_UNITS)
    LOW_STOCK_RATIO: float = 0.3
    LOW_STOCK_MIN_UNITS: int = 200

    # Event fan-out: list of subscriber callback URLs (comma-separated)
    WEBHOOK_URLS: str = ""
    WEBHOOK_TIMEOUT: float = 10.0

    LOG_LEVEL: str = "INFO"

    model_config = {"env_file": ".env"}

    @property
    def webhook_urls(self) -> list[str]:
        return [u.strip() for u in self.WEBHOOK_URLS.split(",") if u.strip()]


settings = Settings()


def configure_logging(level: str | None = None) -> None:
    """Send package logs to stderr at LOG_LEVEL."""
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
