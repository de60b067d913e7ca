import os
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

DEFAULT_API_VERSION = "2025-04"


def _bool_env(name: str, default: bool = False) -> bool:
    v = (os.environ.get(name) or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class ShopifyConfig:
    shop_name: str
    access_token: str
    api_version: str = DEFAULT_API_VERSION

    @property
    def domain(self) -> str:
        shop = self.shop_name.strip().lower()
        # Accept both "my-shop" and "my-shop.myshopify.com"
        return shop if "." in shop else f"{shop}.myshopify.com"

    @property
    def base_url(self) -> str:
        return f"https://{self.domain}/admin/api/{self.api_version}"


@dataclass(frozen=True)
class ConfigError:
    missing: List[str]

    @property
    def message(self) -> str:
        return "missing configuration: " + ", ".join(self.missing)


@dataclass(frozen=True)
class AuthConfig:
    jwt_secret: str = "CHANGE_ME_SECRET"
    issuer: Optional[str] = None
    audience: Optional[str] = None
    algorithms: List[str] = field(default_factory=lambda: ["HS256"])


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite+aiosqlite:///./local.db"
    webhook_secret: str = ""
    store_email_domain: str = "yourstore.com"
    seed_stores: bool = False
    auth: AuthConfig = field(default_factory=AuthConfig)


def load_shopify_config() -> Tuple[Optional[ShopifyConfig], Optional[ConfigError]]:
    """Read the Shopify credentials once; report what is missing instead of raising."""
    shop = (os.environ.get("SHOPIFY_SHOP_NAME") or "").strip()
    token = (os.environ.get("SHOPIFY_ACCESS_TOKEN") or "").strip()
    version = (os.environ.get("SHOPIFY_API_VERSION") or "").strip() or DEFAULT_API_VERSION
    missing = []
    if not shop:
        missing.append("SHOPIFY_SHOP_NAME")
    if not token:
        missing.append("SHOPIFY_ACCESS_TOKEN")
    if missing:
        return None, ConfigError(missing=missing)
    return ShopifyConfig(shop_name=shop, access_token=token, api_version=version), None


def load_settings() -> Settings:
    algorithms = [
        a.strip() for a in (os.environ.get("AUTH_JWT_ALGORITHMS") or "HS256").split(",") if a.strip()
    ]
    auth = AuthConfig(
        jwt_secret=(os.environ.get("AUTH_JWT_SECRET") or "CHANGE_ME_SECRET").strip(),
        issuer=(os.environ.get("AUTH_JWT_ISSUER") or "").strip() or None,
        audience=(os.environ.get("AUTH_JWT_AUDIENCE") or "").strip() or None,
        algorithms=algorithms or ["HS256"],
    )
    return Settings(
        database_url=(os.environ.get("DATABASE_URL") or "sqlite+aiosqlite:///./local.db").strip(),
        webhook_secret=(os.environ.get("SHOPIFY_WEBHOOK_SECRET") or "").strip(),
        store_email_domain=(os.environ.get("STORE_EMAIL_DOMAIN") or "yourstore.com").strip(),
        seed_stores=_bool_env("SEED_STORES"),
        auth=auth,
    )
