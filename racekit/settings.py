from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    # Security
    RACEKIT_ADMIN_USERNAME: str = "admin"
    RACEKIT_ADMIN_PASSWORD: str = "change-me"
    RACEKIT_SECRET_KEY: str = "dev-secret-change-me"
    RACEKIT_SECURE_COOKIES: bool = False
    RACEKIT_SESSION_HOURS: float = 12.0

    # Database
    RACEKIT_DB_URL: str = "sqlite:///./racekit.db"

    # Event
    RACEKIT_EVENT_TAG: str = "CogFamRun2025"
    RACEKIT_REGISTRATION_PREFIX: str = "FR2025"

    # Scanner
    RACEKIT_DONE_RESET_SECONDS: float = 3.0

    # Logging
    RACEKIT_LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = True

settings = Settings()
