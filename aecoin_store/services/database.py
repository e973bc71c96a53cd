from tortoise import Tortoise, fields
from tortoise.models import Model
import os
import ssl
from typing import Any, Optional
from urllib.parse import urlparse, parse_qsl, unquote_plus

from ..utils.constants import OrderStatus
from ..utils.logger import logger

MODELS_MODULE = "aecoin_store.services.database"


class CoinPackage(Model):
    id = fields.IntField(pk=True)
    name = fields.CharField(max_length=100)
    coins = fields.IntField()
    bonus_coins = fields.IntField(default=0)
    price = fields.DecimalField(max_digits=10, decimal_places=2)
    is_active = fields.BooleanField(default=True)
    sort_order = fields.IntField(default=0)
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "coin_packages"

    @property
    def total_coins(self) -> int:
        return self.coins + self.bonus_coins


class Order(Model):
    id = fields.UUIDField(pk=True)
    customer_name = fields.CharField(max_length=120)
    email = fields.CharField(max_length=255, index=True)
    mobile = fields.CharField(max_length=32, null=True)
    package = fields.ForeignKeyField("models.CoinPackage", related_name="orders", null=True, on_delete=fields.SET_NULL)
    coins = fields.IntField()
    amount = fields.DecimalField(max_digits=10, decimal_places=2)
    payment_method = fields.CharField(max_length=30, default="billplz")
    status = fields.CharField(max_length=20, default=OrderStatus.PENDING)  # pending, paid, fulfilled, failed, expired
    bill_id = fields.CharField(max_length=64, unique=True, null=True)
    bill_url = fields.CharField(max_length=500, null=True)
    access_token = fields.CharField(max_length=64, null=True)
    paid_at = fields.DatetimeField(null=True)
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "orders"


class RedemptionCode(Model):
    """Codes handed to the customer once their order is paid"""
    id = fields.IntField(pk=True)
    code = fields.CharField(max_length=32, unique=True)
    coins = fields.IntField()
    order = fields.ForeignKeyField("models.Order", related_name="codes", on_delete=fields.CASCADE)
    is_redeemed = fields.BooleanField(default=False)
    created_at = fields.DatetimeField(auto_now_add=True)

    class Meta:
        table = "redemption_codes"


class PlayerRanking(Model):
    """Monthly leaderboard entry"""
    id = fields.IntField(pk=True)
    user_id = fields.CharField(max_length=64, unique=True)
    player_name = fields.CharField(max_length=100)
    stars = fields.IntField(default=0)
    rank = fields.IntField()
    image_url = fields.CharField(max_length=500, null=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "player_rankings"


class HeroSetting(Model):
    id = fields.IntField(pk=True)
    background_image = fields.CharField(max_length=500)
    video_thumbnail = fields.CharField(max_length=500, null=True)
    is_active = fields.BooleanField(default=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "hero_settings"


def _postgres_config(db_url: str) -> dict[str, Any]:
    parsed = urlparse(db_url)
    query = dict(parse_qsl(parsed.query, keep_blank_values=True))

    sslmode = str(query.pop("sslmode", "")).strip().lower()
    explicit_ssl = str(query.pop("ssl", "")).strip().lower()
    host = (parsed.hostname or "").lower()

    wants_ssl = (
        sslmode in {"require", "verify-ca", "verify-full"}
        or explicit_ssl in {"1", "true", "yes", "require"}
        or host.endswith(".supabase.co")
        or host.endswith(".pooler.supabase.com")
    )

    # Supabase poolers present chains that fail strict validation unless DB_SSL_VERIFY says otherwise.
    verify_override = str(os.getenv("DB_SSL_VERIFY", "")).strip().lower()
    if verify_override in {"1", "true", "yes"}:
        verify_ssl = True
    elif verify_override in {"0", "false", "no"}:
        verify_ssl = False
    else:
        verify_ssl = not host.endswith(".pooler.supabase.com")

    credentials: dict[str, Any] = {
        "host": parsed.hostname or None,
        "port": parsed.port or 5432,
        "user": unquote_plus(parsed.username or "") or None,
        "password": unquote_plus(parsed.password) if parsed.password is not None else None,
        "database": parsed.path[1:] if parsed.path and parsed.path != "/" else None,
    }

    if wants_ssl:
        ctx = ssl.create_default_context()
        if not verify_ssl:
            ctx.check_hostname = False
            ctx.verify_mode = ssl.CERT_NONE
        credentials["ssl"] = ctx

    logger.info("DB init using postgres host=%s ssl=%s ssl_verify=%s", host or "unknown", wants_ssl, verify_ssl)

    return {
        "connections": {
            "default": {
                "engine": "tortoise.backends.asyncpg",
                "credentials": credentials,
            }
        },
        "apps": {
            "models": {
                "models": [MODELS_MODULE],
                "default_connection": "default",
            }
        },
    }


async def init_db(db_url: Optional[str] = None, generate_schemas: bool = True) -> None:
    db_url = db_url or os.getenv("SUPABASE_DATABASE_URL") or os.getenv("DATABASE_URL") or "sqlite://db.sqlite3"

    if db_url.startswith("postgresql://"):
        db_url = "postgres://" + db_url[len("postgresql://") :]

    if db_url.startswith("postgres://"):
        await Tortoise.init(config=_postgres_config(db_url))
    else:
        await Tortoise.init(db_url=db_url, modules={"models": [MODELS_MODULE]})

    if generate_schemas:
        await Tortoise.generate_schemas()


async def close_db() -> None:
    await Tortoise.close_connections()
