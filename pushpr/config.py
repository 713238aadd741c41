import os


class Settings:
    # GitHub auth: either a static token or GitHub App credentials
    github_token: str
    app_id: str
    app_private_key: str  # PEM contents (loaded from file path or env)
    app_installation_id: int

    # General
    github_api_url: str
    service_version: str
    log_level: str

    # Client-side rate limiting (seconds between tokens)
    api_interval_seconds: float
    push_interval_seconds: float
    rate_limit_min_remaining: int

    # Timeouts
    github_timeout_seconds: float
    git_timeout_seconds: float

    # Optional per-branch lock
    redis_url: str
    redis_namespace: str
    redis_lock_ttl_seconds: int

    def __init__(self) -> None:
        self.github_token = os.getenv("GITHUB_API_TOKEN", "").strip()
        self.app_id = os.getenv("APP_ID", "").strip()
        # APP_PRIVATE_KEY is a filesystem path to the PEM file, or the PEM string itself.
        apk_env = os.getenv("APP_PRIVATE_KEY", "").strip()
        pem_contents = apk_env
        if apk_env and os.path.isfile(apk_env):
            with open(apk_env, "r", encoding="utf-8") as f:
                pem_contents = f.read().strip()
        self.app_private_key = pem_contents
        self.app_installation_id = int(os.getenv("APP_INSTALLATION_ID", "0") or 0)

        self.github_api_url = os.getenv("GITHUB_API_URL", "https://api.github.com").rstrip("/")
        self.service_version = os.getenv("SERVICE_VERSION", "dev")
        self.log_level = os.getenv("LOG_LEVEL", "INFO")

        self.api_interval_seconds = float(os.getenv("GITHUB_API_INTERVAL_SECONDS", "1.0"))
        self.push_interval_seconds = float(os.getenv("GITHUB_PUSH_INTERVAL_SECONDS", "30.0"))
        self.rate_limit_min_remaining = int(os.getenv("RATE_LIMIT_MIN_REMAINING", "50"))

        self.github_timeout_seconds = float(os.getenv("GITHUB_TIMEOUT_SECONDS", "30"))
        self.git_timeout_seconds = float(os.getenv("GIT_TIMEOUT_SECONDS", "120"))

        self.redis_url = os.getenv("REDIS_URL", "").strip()
        self.redis_namespace = os.getenv("REDIS_NAMESPACE", "pushpr")
        self.redis_lock_ttl_seconds = int(os.getenv("REDIS_LOCK_TTL_SECONDS", "300"))

    def redis_key(self, *parts: str) -> str:
        return f"{self.redis_namespace}:" + ":".join(parts)


SETTINGS = Settings()
