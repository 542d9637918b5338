import os

TRUTHY = {"1", "true", "yes", "on"}


def env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in TRUTHY


def app_env() -> str:
    return os.getenv("APP_ENV", "production").strip().lower()


def is_development() -> bool:
    return app_env() == "development"
