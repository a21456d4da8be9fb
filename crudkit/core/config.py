from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.engine import URL
from typing import List

class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    APP_ENV: str = "local"
    APP_NAME: str = "crudkit"
    LOG_LEVEL: str = "INFO"

    CORS_ORIGINS: str = "*"

    # Either a full SQLAlchemy URL or the discrete DB_* parts below.
    DATABASE_URL: str = ""
    DB_DRIVER: str = "postgresql+psycopg"
    DB_HOST: str = "localhost"
    DB_PORT: int = 5432
    DB_USERNAME: str = "postgres"
    DB_PASSWORD: str = "postgres"
    DB_NAME: str = "postgres"

    ENTITY_REGISTRY: str = ""  # module:attribute, e.g. "myservice.entities:registry"
    API_PREFIX: str = "/restful"
    TABLES_PREFIX: str = "/tableCommands"
    TABLE_COMMANDS_REQUIRE_ADMIN: bool = False

    JWT_AUDIENCE: str = ""
    AUTH_ISSUER: str = ""
    ADMIN_AUDIENCE: str = ""
    ADMIN_ISSUER: str = ""
    ADMIN_PERMISSION: str = "read:admin"

    SUBSCRIPTION_ISSUER: str = ""
    SUBSCRIPTION_SECRET: str = "change_me_subscription"
    SUBSCRIPTION_SUBJECT_CLAIM: str = "subject_id"
    SUBSCRIPTION_JWT_TTL_DAYS: int = 30

    JWKS_CACHE_TTL_SECONDS: int = 0  # 0 disables the key-set cache
    JWKS_FETCH_TIMEOUT_SECONDS: float = 5.0

    @property
    def cors_origins_list(self) -> List[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL.strip():
            return self.DATABASE_URL.strip()
        url = URL.create(
            self.DB_DRIVER,
            username=self.DB_USERNAME,
            password=self.DB_PASSWORD,
            host=self.DB_HOST,
            port=self.DB_PORT,
            database=self.DB_NAME,
        )
        return url.render_as_string(hide_password=False)

settings = Settings()
