from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Upstream agent service
    upstream_base_url: str = "http://localhost:2024"
    upstream_assistant_id: str = "planned-supervisor-agent"
    upstream_recursion_limit: int = 60
    upstream_connect_timeout: float = 10.0
    upstream_read_timeout: float = 300.0  # between chunks, not total
    frontend_url: str = "http://localhost:3000"

    # Token verification service
    auth_service_url: str = "http://localhost:8000"
    auth_timeout: float = 10.0

    # Listener fan-out
    max_connections: int = 1000
    connection_timeout_seconds: float = 30 * 60
    heartbeat_interval_seconds: float = 30.0
    sweep_interval_seconds: float = 60.0
    listener_queue_size: int = 256

    # Orchestration
    max_consecutive_persist_failures: int = 5

    # PostgreSQL database (empty -> in-memory store)
    database_url: str = ""
    database_pool_max_size: int = 10

    # App
    cors_origins: str = "http://localhost:3000"
    app_log_level: str = "INFO"
    noisy_log_level: str = "WARNING"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",")]


settings = Settings()
