from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from rlsguard.errors import ConfigurationError

DEFAULT_SETTINGS_PATH = "config/settings.yaml"
SUPABASE_AUTHORIZE_URL = "https://api.supabase.com/v1/oauth/authorize"
SUPABASE_TOKEN_URL = "https://api.supabase.com/v1/oauth/token"
SUPABASE_MANAGEMENT_API = "https://api.supabase.com/v1"
SUPABASE_PROJECT_URL_TEMPLATE = "https://{ref}.supabase.co"
DEFAULT_AI_MODEL = "claude-sonnet-4-20250514"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def load_yaml(path: str) -> dict[str, Any]:
    with open(path, "r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


def resolve_settings(path: str | None = None) -> dict[str, Any]:
    """Load the settings file (if any) and fill every gap from the environment."""
    settings_path = path or os.getenv("RLSGUARD_SETTINGS", DEFAULT_SETTINGS_PATH)
    settings = load_yaml(settings_path) if settings_path and Path(settings_path).exists() else {}
    settings.setdefault("paths", {})
    settings.setdefault("security", {})
    settings.setdefault("oauth", {})
    settings.setdefault("scan", {})
    settings.setdefault("classifier", {})
    settings.setdefault("execution", {})
    settings.setdefault("web", {})
    settings["paths"].setdefault("db_path", os.getenv("RLSGUARD_DB_PATH", "/data/rlsguard.db"))
    settings["security"].setdefault("encryption_key", os.getenv("ENCRYPTION_KEY", ""))
    settings["oauth"].setdefault("client_id", os.getenv("SUPABASE_OAUTH_CLIENT_ID", ""))
    settings["oauth"].setdefault("client_secret", os.getenv("SUPABASE_OAUTH_CLIENT_SECRET", ""))
    settings["oauth"].setdefault("scope", os.getenv("SUPABASE_OAUTH_SCOPE", "all"))
    settings["oauth"].setdefault("authorize_url", os.getenv("SUPABASE_OAUTH_AUTHORIZE_URL", SUPABASE_AUTHORIZE_URL))
    settings["oauth"].setdefault("token_url", os.getenv("SUPABASE_OAUTH_TOKEN_URL", SUPABASE_TOKEN_URL))
    settings["oauth"].setdefault("timeout_seconds", float(os.getenv("SUPABASE_OAUTH_TIMEOUT_SECONDS", "15")))
    settings["scan"].setdefault("max_tables", int(os.getenv("RLSGUARD_MAX_TABLES", "50")))
    settings["scan"].setdefault("concurrency_limit", int(os.getenv("RLSGUARD_CONCURRENCY", "5")))
    settings["scan"].setdefault("probe_timeout_seconds", float(os.getenv("RLSGUARD_PROBE_TIMEOUT_SECONDS", "10")))
    settings["scan"].setdefault("query_timeout_seconds", float(os.getenv("RLSGUARD_QUERY_TIMEOUT_SECONDS", "30")))
    settings["scan"].setdefault("management_api_url", os.getenv("SUPABASE_MANAGEMENT_API", SUPABASE_MANAGEMENT_API))
    settings["scan"].setdefault("project_url_template", os.getenv("SUPABASE_PROJECT_URL_TEMPLATE", SUPABASE_PROJECT_URL_TEMPLATE))
    settings["classifier"].setdefault("enabled", _env_bool("RLSGUARD_ENABLE_AI", "true"))
    settings["classifier"].setdefault("api_key", os.getenv("ANTHROPIC_API_KEY", ""))
    settings["classifier"].setdefault("model", os.getenv("RLSGUARD_AI_MODEL", DEFAULT_AI_MODEL))
    settings["classifier"].setdefault("max_tokens", int(os.getenv("RLSGUARD_AI_MAX_TOKENS", "2000")))
    settings["classifier"].setdefault("timeout_seconds", float(os.getenv("RLSGUARD_AI_TIMEOUT_SECONDS", "60")))
    settings["execution"].setdefault("max_concurrent_projects", int(os.getenv("RLSGUARD_MAX_CONCURRENT_PROJECTS", "2")))
    settings["web"].setdefault("session_secret", os.getenv("RLSGUARD_SESSION_SECRET", ""))
    settings["web"].setdefault("cookie_secure", _env_bool("RLSGUARD_COOKIE_SECURE", "false"))
    settings["web"].setdefault("public_url", os.getenv("RLSGUARD_PUBLIC_URL", ""))
    return settings


@dataclass
class OAuthConfig:
    client_id: str
    client_secret: str
    scope: str = "all"
    authorize_url: str = SUPABASE_AUTHORIZE_URL
    token_url: str = SUPABASE_TOKEN_URL
    timeout_seconds: float = 15.0

    @classmethod
    def from_settings(cls, settings: dict[str, Any]) -> "OAuthConfig":
        oauth = settings.get("oauth", {})
        return cls(
            client_id=str(oauth.get("client_id") or ""),
            client_secret=str(oauth.get("client_secret") or ""),
            scope=str(oauth.get("scope") or "all"),
            authorize_url=str(oauth.get("authorize_url") or SUPABASE_AUTHORIZE_URL),
            token_url=str(oauth.get("token_url") or SUPABASE_TOKEN_URL),
            timeout_seconds=float(oauth.get("timeout_seconds", 15)),
        )

    def require_client(self) -> None:
        if not self.client_id or not self.client_secret:
            raise ConfigurationError(
                "OAuth not configured. Please set SUPABASE_OAUTH_CLIENT_ID and SUPABASE_OAUTH_CLIENT_SECRET"
            )


@dataclass
class ScanConfig:
    max_tables: int = 10
    concurrency_limit: int = 5
    probe_timeout_seconds: float = 10.0
    query_timeout_seconds: float = 30.0
    management_api_url: str = SUPABASE_MANAGEMENT_API
    project_url_template: str = SUPABASE_PROJECT_URL_TEMPLATE

    def __post_init__(self) -> None:
        if self.max_tables < 0:
            raise ConfigurationError("max_tables must be >= 0")
        if self.concurrency_limit < 1:
            raise ConfigurationError("concurrency_limit must be >= 1")

    @classmethod
    def from_settings(cls, settings: dict[str, Any]) -> "ScanConfig":
        scan = settings.get("scan", {})
        return cls(
            max_tables=int(scan.get("max_tables", 10)),
            concurrency_limit=int(scan.get("concurrency_limit", 5)),
            probe_timeout_seconds=float(scan.get("probe_timeout_seconds", 10)),
            query_timeout_seconds=float(scan.get("query_timeout_seconds", 30)),
            management_api_url=str(scan.get("management_api_url") or SUPABASE_MANAGEMENT_API),
            project_url_template=str(scan.get("project_url_template") or SUPABASE_PROJECT_URL_TEMPLATE),
        )


@dataclass
class ClassifierConfig:
    enabled: bool = True
    api_key: str = ""
    model: str = DEFAULT_AI_MODEL
    max_tokens: int = 2000
    timeout_seconds: float = 60.0

    @property
    def active(self) -> bool:
        return self.enabled and bool(self.api_key)

    @classmethod
    def from_settings(cls, settings: dict[str, Any]) -> "ClassifierConfig":
        classifier = settings.get("classifier", {})
        return cls(
            enabled=bool(classifier.get("enabled", True)),
            api_key=str(classifier.get("api_key") or ""),
            model=str(classifier.get("model") or DEFAULT_AI_MODEL),
            max_tokens=int(classifier.get("max_tokens", 2000)),
            timeout_seconds=float(classifier.get("timeout_seconds", 60)),
        )


@dataclass
class AppSettings:
    db_path: str
    encryption_key: str
    oauth: OAuthConfig
    scan: ScanConfig
    classifier: ClassifierConfig
    max_concurrent_projects: int = 2
    session_secret: str = ""
    cookie_secure: bool = False
    public_url: str = ""

    @classmethod
    def from_settings(cls, settings: dict[str, Any]) -> "AppSettings":
        return cls(
            db_path=str(settings["paths"]["db_path"]),
            encryption_key=str(settings["security"].get("encryption_key") or ""),
            oauth=OAuthConfig.from_settings(settings),
            scan=ScanConfig.from_settings(settings),
            classifier=ClassifierConfig.from_settings(settings),
            max_concurrent_projects=max(1, int(settings["execution"].get("max_concurrent_projects", 2))),
            session_secret=str(settings["web"].get("session_secret") or ""),
            cookie_secure=bool(settings["web"].get("cookie_secure", False)),
            public_url=str(settings["web"].get("public_url") or ""),
        )

    @classmethod
    def load(cls, path: str | None = None) -> "AppSettings":
        return cls.from_settings(resolve_settings(path))
