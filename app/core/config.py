from app.utils.env_helper import (
    env_bool,
    env_float,
    env_int,
    env_list,
    env_none_or_str,
)


class Settings:
    """Runtime configuration read from the environment (.env is loaded first)."""

    def __init__(self):
        # Supabase
        self.supabase_url = env_none_or_str("PUBLIC_SUPABASE_URL", "")
        self.supabase_key = env_none_or_str("SECRET_API_KEY", "")
        self.supabase_jwt_secret = env_none_or_str("SUPABASE_JWT_SECRET", "")
        self.supabase_schema = env_none_or_str("SUPABASE_SCHEMA", "public")

        # HTTP
        self.cors_origins = env_list(
            "CORS_ORIGINS", ["http://localhost:5173", "http://localhost:8080"]
        )

        # Logging
        self.log_level = env_none_or_str("LOG_LEVEL", "INFO")
        self.log_json = env_bool("LOG_JSON", False)

        # Realtime fanout
        self.fanout_subscribe_retries = env_int("FANOUT_SUBSCRIBE_RETRIES", 3)
        self.fanout_subscribe_backoff = env_float("FANOUT_SUBSCRIBE_BACKOFF", 0.5)
        self.fanout_watch_membership = env_bool("FANOUT_WATCH_MEMBERSHIP", True)

        # Community
        self.profile_search_limit = env_int("PROFILE_SEARCH_LIMIT", 10)

    @property
    def jwt_issuer(self) -> str:
        return f"{self.supabase_url}/auth/v1"


settings = Settings()
