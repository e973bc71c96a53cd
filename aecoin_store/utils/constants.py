from datetime import timedelta, timezone


class OrderStatus:
    PENDING = "pending"
    PAID = "paid"
    FULFILLED = "fulfilled"
    FAILED = "failed"
    EXPIRED = "expired"

    ALL = (PENDING, PAID, FULFILLED, FAILED, EXPIRED)


class Emojis:
    DIAMOND = "💎"
    USER = "👤"
    COIN = "🪙"
    CARD = "💳"
    MONEY = "💰"
    ID = "🆔"
    CLOCK = "⏱"
    SUCCESS = "✓"


# Malaysia Time, used for customer-facing timestamps.
MYT = timezone(timedelta(hours=8), "MYT")

STORE_NAME = "AECOIN STORE"
DEFAULT_COLLECTION_TITLE = "AECOIN Store"
DEFAULT_COLLECTION_DESCRIPTION = "GTA Online virtual currency packages"
BILLPLZ_DEFAULT_API_URL = "https://www.billplz.com/api"
BILLPLZ_REDIRECT_PREFIX = "billplz"
SIGNATURE_FIELD = "x_signature"
