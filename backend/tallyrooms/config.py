from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    database_url: str = "postgresql+asyncpg://localhost:5432/beertally"
    sql_echo: bool = False
    session_secret_key: str = "REPLACE-THIS-WITH-RANDOM-STRING"
    jwt_algorithm: str = "HS256"
    session_expire_minutes: int = 60 * 24 * 30
    session_cookie_name: str = "session"
    cors_origins: str = "http://localhost:5173"
    log_level: str = "INFO"

    room_code_length: int = 6
    room_code_max_attempts: int = 10
    room_name_max_length: int = 100
    display_name_max_length: int = 30
    message_max_length: int = 500
    history_limit: int = 50
    history_limit_max: int = 200

    class Config:
        env_file = ".env"
        case_sensitive = False

settings = Settings()
