import asyncio
import json
import os
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp
from dotenv import load_dotenv

from ..utils.constants import (
    BILLPLZ_DEFAULT_API_URL,
    DEFAULT_COLLECTION_DESCRIPTION,
    DEFAULT_COLLECTION_TITLE,
)
from ..utils.errors import ConfigurationError, IntegrationError
from ..utils.logger import logger

RETRYABLE_STATUSES = (429, 502, 503, 504)
MAX_RETRY_DELAY_SECONDS = 5.0


def to_sen(amount: Any) -> int:
    """Convert a MYR amount to integer sen, rounding half up."""
    value = Decimal(str(amount)) * 100
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class CollectionCache:
    """Holds the Billplz collection id for the lifetime of the process.

    The first caller creates the collection; callers arriving while that
    creation is in flight wait on the same lock and reuse its result. A failed
    creation leaves the cache empty so the next call tries again.
    """

    def __init__(self, collection_id: Optional[str] = None):
        self._collection_id = (collection_id or "").strip() or None
        self._lock = asyncio.Lock()

    @property
    def collection_id(self) -> Optional[str]:
        return self._collection_id

    async def get_or_create(self, factory: Callable[[], Awaitable[str]]) -> str:
        if self._collection_id:
            return self._collection_id

        async with self._lock:
            if self._collection_id:
                return self._collection_id
            self._collection_id = await factory()
            return self._collection_id

    def clear(self) -> None:
        self._collection_id = None


class BillplzClient:
    def __init__(
        self,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        collection_cache: Optional[CollectionCache] = None,
        timeout_seconds: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_backoff_seconds: Optional[float] = None,
    ):
        load_dotenv()

        if secret_key is None:
            secret_key = os.getenv("BILLPLZ_SECRET_KEY") or ""
        self.secret_key = secret_key.strip()
        self.base_url = (base_url or os.getenv("BILLPLZ_API_URL") or BILLPLZ_DEFAULT_API_URL).strip().rstrip("/")
        self.collection_title = (os.getenv("BILLPLZ_COLLECTION_TITLE") or DEFAULT_COLLECTION_TITLE).strip()
        self.collection_description = (
            os.getenv("BILLPLZ_COLLECTION_DESCRIPTION") or DEFAULT_COLLECTION_DESCRIPTION
        ).strip()
        self.collection_cache = collection_cache or CollectionCache(os.getenv("BILLPLZ_COLLECTION_ID"))

        if timeout_seconds is None:
            timeout_seconds = self._to_float(os.getenv("BILLPLZ_TIMEOUT_SECONDS"), default=15.0)
        if max_retries is None:
            max_retries = self._to_int(os.getenv("BILLPLZ_MAX_RETRIES"), default=2)
        if retry_backoff_seconds is None:
            retry_backoff_seconds = self._to_float(os.getenv("BILLPLZ_RETRY_BACKOFF_SECONDS"), default=0.5)
        self.timeout_seconds = timeout_seconds
        self.max_retries = max(0, max_retries)
        self.retry_backoff_seconds = max(0.0, retry_backoff_seconds)

    @property
    def configured(self) -> bool:
        return bool(self.secret_key)

    def _require_secret(self) -> None:
        if not self.secret_key:
            raise ConfigurationError("BILLPLZ_SECRET_KEY not configured")

    async def _request(self, method: str, path: str, data: Optional[Dict[str, Any]] = None) -> Any:
        self._require_secret()

        url = f"{self.base_url}/{path.lstrip('/')}"
        auth = aiohttp.BasicAuth(self.secret_key, "")
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        kwargs: Dict[str, Any] = {}
        if data is not None:
            kwargs["json"] = data

        async with aiohttp.ClientSession(timeout=timeout, auth=auth) as session:
            for attempt in range(self.max_retries + 1):
                try:
                    async with session.request(method.upper(), url, **kwargs) as response:
                        body = await response.text()

                        if response.status in RETRYABLE_STATUSES and attempt < self.max_retries:
                            delay = self._retry_delay(attempt, response.headers.get("Retry-After"))
                            logger.warning(
                                "Billplz %s %s returned %s, retrying in %.2fs",
                                method.upper(),
                                path,
                                response.status,
                                delay,
                            )
                            await asyncio.sleep(delay)
                            continue

                        if response.status < 200 or response.status >= 300:
                            logger.error(f"Billplz API error {response.status} at {url}: {body[:300]}")
                            raise IntegrationError(
                                f"Billplz {method.upper()} {path} failed: {body}",
                                status=response.status,
                                body=body,
                            )

                        if not body:
                            return {}
                        try:
                            return json.loads(body)
                        except json.JSONDecodeError as exc:
                            raise IntegrationError(
                                f"Billplz {method.upper()} {path} returned invalid JSON",
                                status=response.status,
                                body=body,
                            ) from exc
                except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                    if attempt < self.max_retries:
                        delay = self._retry_delay(attempt)
                        logger.warning(f"Billplz request {method.upper()} {path} failed ({exc!r}), retrying in {delay:.2f}s")
                        await asyncio.sleep(delay)
                        continue
                    logger.error(f"Billplz request failed ({method.upper()} {url}): {exc!r}")
                    raise IntegrationError(f"Billplz {method.upper()} {path} failed: {exc!r}") from exc

        raise IntegrationError(f"Billplz {method.upper()} {path} failed after {self.max_retries + 1} attempts")

    def _retry_delay(self, attempt: int, retry_after: Optional[str] = None) -> float:
        delay = self.retry_backoff_seconds * (2 ** attempt)
        hinted = self._to_float(retry_after, default=0.0)
        return min(max(delay, hinted), MAX_RETRY_DELAY_SECONDS)

    async def _create_collection(self) -> str:
        payload = await self._request(
            "POST",
            "v3/collections",
            {"title": self.collection_title, "description": self.collection_description},
        )
        collection_id = str(payload.get("id") or "").strip() if isinstance(payload, dict) else ""
        if not collection_id:
            logger.error(f"Invalid Billplz collection response: {payload}")
            raise IntegrationError("Failed to create Billplz collection: no id returned", body=json.dumps(payload))

        logger.info(f"Billplz collection created: {collection_id}")
        return collection_id

    async def ensure_collection(self) -> str:
        self._require_secret()
        return await self.collection_cache.get_or_create(self._create_collection)

    async def create_bill(
        self,
        description: str,
        amount: Any,
        name: str,
        email: str,
        callback_url: str,
        redirect_url: str,
        mobile: Optional[str] = None,
        reference_1_label: Optional[str] = None,
        reference_1: Optional[str] = None,
    ) -> Dict[str, Any]:
        self._require_secret()
        collection_id = await self.ensure_collection()

        bill_data: Dict[str, Any] = {
            "collection_id": collection_id,
            "description": description,
            "email": email,
            "name": name,
            "amount": to_sen(amount),
            "callback_url": callback_url,
            "redirect_url": redirect_url,
        }
        if mobile:
            bill_data["mobile"] = mobile
        if reference_1_label and reference_1:
            bill_data["reference_1_label"] = reference_1_label
            bill_data["reference_1"] = reference_1

        payload = await self._request("POST", "v3/bills", bill_data)
        if not isinstance(payload, dict) or not payload.get("id") or not payload.get("url"):
            logger.error(f"Invalid Billplz bill response: {payload}")
            raise IntegrationError("Failed to create Billplz bill: invalid response", body=json.dumps(payload))

        logger.info(f"Billplz bill created: {payload['id']}")
        return payload

    async def get_bill(self, bill_id: str) -> Dict[str, Any]:
        payload = await self._request("GET", f"v3/bills/{bill_id}")
        if not isinstance(payload, dict):
            raise IntegrationError(f"Invalid Billplz bill payload for {bill_id}", body=str(payload))
        return payload

    async def verify_bill_payment(self, bill_id: str) -> bool:
        try:
            bill = await self.get_bill(bill_id)
        except Exception as exc:
            logger.error(f"Billplz payment verification failed for {bill_id}: {exc}")
            return False
        return bill.get("paid") is True and bill.get("state") == "paid"

    @staticmethod
    def _to_float(value: Any, default: float) -> float:
        try:
            return float(value)
        except (TypeError, ValueError):
            return default

    @staticmethod
    def _to_int(value: Any, default: int) -> int:
        try:
            return int(value)
        except (TypeError, ValueError):
            return default
