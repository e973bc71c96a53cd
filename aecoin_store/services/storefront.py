import asyncio
import fnmatch
import hmac
import os
import uuid
from typing import Any, Optional
from urllib.parse import urlencode

from aiohttp import web
from dotenv import load_dotenv

from .billplz import BillplzClient
from .database import CoinPackage, HeroSetting, Order, PlayerRanking
from .discord_webhook import OrderNotifier
from .orders import InvalidTransition, OrderService
from .rankings import (
    current_month_label,
    get_active_hero,
    get_leaderboard,
    hero_to_dict,
    ranking_to_dict,
    upsert_ranking,
)
from .signature import SignatureVerifier, parse_redirect_query
from ..utils.errors import ConfigurationError, IntegrationError, SignatureError
from ..utils.logger import logger


def package_to_dict(package: CoinPackage) -> dict[str, Any]:
    return {
        "id": package.id,
        "name": package.name,
        "coins": package.coins,
        "bonusCoins": package.bonus_coins,
        "totalCoins": package.total_coins,
        "price": f"{package.price:.2f}",
    }


def order_to_dict(order: Order) -> dict[str, Any]:
    return {
        "id": str(order.id),
        "status": order.status,
        "coins": order.coins,
        "finalAmount": f"{order.amount:.2f}",
        "paymentMethod": order.payment_method,
        "billUrl": order.bill_url,
        "createdAt": order.created_at.isoformat() if order.created_at else None,
        "paidAt": order.paid_at.isoformat() if order.paid_at else None,
    }


class StorefrontServer:
    def __init__(
        self,
        order_service: Optional[OrderService] = None,
        verifier: Optional[SignatureVerifier] = None,
    ):
        load_dotenv()
        self.host = os.getenv("STORE_API_HOST", "0.0.0.0")
        self.port = self._to_int(os.getenv("PORT"), default=5000)
        self.admin_api_key = (os.getenv("ADMIN_API_KEY") or "").strip()
        self.public_base_url = (os.getenv("PUBLIC_BASE_URL") or f"http://localhost:{self.port}").strip().rstrip("/")
        self.frontend_url = (os.getenv("FRONTEND_URL") or self.public_base_url).strip().rstrip("/")
        raw_origins = (os.getenv("FRONTEND_ORIGINS") or self.frontend_url).strip()
        self.allowed_origins = [origin.strip() for origin in raw_origins.split(",") if origin.strip()]
        self.expiry_interval_seconds = self._to_int(os.getenv("ORDER_EXPIRY_INTERVAL_SECONDS"), default=300)

        if order_service is None:
            order_service = OrderService(
                BillplzClient(),
                OrderNotifier(),
                pending_ttl_minutes=self._to_int(os.getenv("ORDER_PENDING_TTL_MINUTES"), default=60),
            )
        self.orders = order_service
        self.verifier = verifier or SignatureVerifier()

        self.app = web.Application(
            middlewares=[
                self._error_middleware,
                self._cors_middleware,
                self._auth_middleware,
            ]
        )
        self.app.router.add_route("OPTIONS", "/{tail:.*}", self._handle_options)
        self.app.router.add_get("/api/health", self.health)
        self.app.router.add_get("/api/packages", self.packages)
        self.app.router.add_post("/api/checkout", self.checkout)
        self.app.router.add_post("/api/billplz/callback", self.billplz_callback)
        self.app.router.add_get("/api/billplz/redirect", self.billplz_redirect)
        self.app.router.add_get("/api/orders", self.list_orders)
        self.app.router.add_get("/api/orders/{order_id}/codes", self.order_codes)
        self.app.router.add_get("/api/rankings", self.rankings)
        self.app.router.add_get("/api/hero", self.hero)
        self.app.router.add_get("/api/admin/hero", self.admin_list_hero)
        self.app.router.add_post("/api/admin/hero", self.admin_create_hero)
        self.app.router.add_patch("/api/admin/hero/{hero_id}", self.admin_update_hero)
        self.app.router.add_delete("/api/admin/hero/{hero_id}", self.admin_delete_hero)
        self.app.router.add_get("/api/admin/rankings", self.admin_list_rankings)
        self.app.router.add_post("/api/admin/rankings", self.admin_upsert_ranking)
        self.app.router.add_patch("/api/admin/rankings/{ranking_id}", self.admin_update_ranking)
        self.app.router.add_delete("/api/admin/rankings/{ranking_id}", self.admin_delete_ranking)
        self.app.router.add_post("/api/admin/orders/expire", self.admin_expire_orders)

        self.runner: Optional[web.AppRunner] = None
        self._expiry_task: Optional[asyncio.Task] = None

    @web.middleware
    async def _error_middleware(self, request: web.Request, handler):
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except SignatureError:
            return web.json_response({"ok": False, "message": "invalid signature"}, status=403)
        except ConfigurationError as exc:
            logger.error(f"Configuration error on {request.path}: {exc}")
            return web.json_response({"ok": False, "message": "service is not configured"}, status=503)
        except IntegrationError as exc:
            logger.error(f"Upstream error on {request.path}: {exc}")
            return web.json_response({"ok": False, "message": "payment gateway error"}, status=502)
        except Exception as exc:
            logger.exception(f"Storefront error on {request.path}: {exc}")
            return web.json_response({"ok": False, "message": "internal server error"}, status=500)

    @web.middleware
    async def _cors_middleware(self, request: web.Request, handler):
        response = await handler(request)
        origin = request.headers.get("Origin")
        if "*" in self.allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = "*"
        elif origin and self._is_origin_allowed(origin):
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
        response.headers["Access-Control-Allow-Methods"] = "GET,POST,PATCH,DELETE,OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = (
            request.headers.get("Access-Control-Request-Headers") or "Content-Type,Authorization,x-api-key,x-order-token"
        )
        return response

    @web.middleware
    async def _auth_middleware(self, request: web.Request, handler):
        if request.method == "OPTIONS" or not request.path.startswith("/api/admin/"):
            return await handler(request)

        if not self.admin_api_key:
            raise ConfigurationError("ADMIN_API_KEY not configured")
        if not self._is_admin(request):
            return web.json_response({"ok": False, "message": "unauthorized"}, status=401)

        return await handler(request)

    def _is_admin(self, request: web.Request) -> bool:
        if not self.admin_api_key:
            return False
        received_key = request.headers.get("x-api-key", "").strip()
        auth_header = request.headers.get("authorization", "").strip()
        if not received_key and auth_header.lower().startswith("bearer "):
            received_key = auth_header[7:].strip()
        return bool(received_key) and hmac.compare_digest(received_key.encode(), self.admin_api_key.encode())

    @staticmethod
    def _order_token(request: web.Request) -> str:
        return str(request.query.get("token") or request.headers.get("x-order-token") or "").strip()

    @staticmethod
    def _token_matches(order: Order, token: str) -> bool:
        if not token or not order.access_token:
            return False
        return hmac.compare_digest(token.encode(), order.access_token.encode())

    def _signature_mode(self) -> str:
        if self.verifier.signature_key:
            return "enabled"
        return "bypassed" if self.verifier.allow_bypass else "unconfigured"

    async def _handle_options(self, request: web.Request):
        return web.Response(status=204)

    def _is_origin_allowed(self, origin: str) -> bool:
        for allowed in self.allowed_origins:
            if allowed == origin or ("*" in allowed and fnmatch.fnmatch(origin, allowed)):
                return True
        return False

    async def start(self) -> None:
        if self.runner is not None:
            return

        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, self.host, self.port)
        await site.start()
        if self.expiry_interval_seconds > 0:
            self._expiry_task = asyncio.create_task(self._expire_loop())
        logger.info(f"Storefront listening on {self.host}:{self.port}")

    async def stop(self) -> None:
        if self.runner is None:
            return

        if self._expiry_task is not None:
            self._expiry_task.cancel()
            try:
                await self._expiry_task
            except asyncio.CancelledError:
                pass
            self._expiry_task = None
        await self.orders.notifier.drain()
        await self.runner.cleanup()
        self.runner = None
        logger.info("Storefront stopped.")

    async def _expire_loop(self) -> None:
        while True:
            await asyncio.sleep(self.expiry_interval_seconds)
            try:
                await self.orders.expire_stale_orders()
            except Exception as exc:
                logger.error(f"Pending order expiry failed: {exc}")

    async def health(self, request: web.Request):
        return web.json_response(
            {
                "ok": True,
                "billplzConfigured": self.orders.billplz.configured,
                "signatureVerification": self._signature_mode(),
                "discordConfigured": self.orders.notifier.configured,
            }
        )

    async def packages(self, request: web.Request):
        rows = await CoinPackage.filter(is_active=True).order_by("sort_order", "price")
        return web.json_response({"ok": True, "packages": [package_to_dict(row) for row in rows]})

    async def checkout(self, request: web.Request):
        payload = await self._safe_json(request)
        if payload is None:
            return web.json_response({"ok": False, "message": "invalid json body"}, status=400)

        package_id = self._to_int(payload.get("packageId"), default=None)
        name = str(payload.get("name") or "").strip()
        email = str(payload.get("email") or "").strip()
        mobile = str(payload.get("mobile") or "").strip() or None
        if package_id is None:
            return web.json_response({"ok": False, "message": "packageId is required"}, status=400)
        if not name or "@" not in email:
            return web.json_response({"ok": False, "message": "name and a valid email are required"}, status=400)

        try:
            order = await self.orders.create_checkout(
                package_id=package_id,
                customer_name=name,
                email=email,
                mobile=mobile,
                callback_url=f"{self.public_base_url}/api/billplz/callback",
                redirect_url=f"{self.public_base_url}/api/billplz/redirect",
            )
        except LookupError as exc:
            return web.json_response({"ok": False, "message": str(exc)}, status=404)

        return web.json_response(
            {
                "ok": True,
                "orderId": str(order.id),
                "accessToken": order.access_token,
                "billId": order.bill_id,
                "billUrl": order.bill_url,
            }
        )

    async def billplz_callback(self, request: web.Request):
        form = await request.post()
        fields = {key: str(value) for key, value in form.items()}
        if not fields.get("id"):
            return web.json_response({"ok": False, "message": "malformed callback payload"}, status=400)

        self.verifier.require_callback(fields)
        try:
            order = await self.orders.handle_callback(fields)
        except LookupError:
            return web.json_response({"ok": False, "message": "unknown bill"}, status=404)
        except InvalidTransition:
            return web.json_response({"ok": False, "message": "order can no longer be paid"}, status=409)

        return web.json_response({"ok": True, "orderId": str(order.id), "status": order.status})

    async def billplz_redirect(self, request: web.Request):
        fields = parse_redirect_query(request.query)
        if not fields.get("id"):
            return web.json_response({"ok": False, "message": "malformed redirect"}, status=400)

        self.verifier.require_redirect(fields)
        try:
            order = await self.orders.handle_redirect(fields)
        except LookupError:
            return web.json_response({"ok": False, "message": "unknown bill"}, status=404)
        except InvalidTransition:
            return web.json_response({"ok": False, "message": "order can no longer be paid"}, status=409)

        query = urlencode({"order": str(order.id), "status": order.status, "token": order.access_token or ""})
        raise web.HTTPFound(f"{self.frontend_url}/orders?{query}")

    async def list_orders(self, request: web.Request):
        email = str(request.query.get("email", "")).strip()
        if not email:
            return web.json_response({"ok": False, "message": "email is required"}, status=400)

        # Customers prove ownership with the access token of any of their orders.
        if not self._is_admin(request):
            token = self._order_token(request)
            owner = await Order.get_or_none(access_token=token) if token else None
            if owner is None or owner.email != email.lower():
                return web.json_response({"ok": False, "message": "unauthorized"}, status=401)

        rows = await self.orders.list_orders(email)
        return web.json_response({"ok": True, "orders": [order_to_dict(row) for row in rows]})

    async def order_codes(self, request: web.Request):
        order_id = self._parse_uuid(request.match_info.get("order_id"))
        if order_id is None:
            return web.json_response({"ok": False, "message": "order not found"}, status=404)

        if not self._is_admin(request):
            token = self._order_token(request)
            if not token:
                return web.json_response({"ok": False, "message": "unauthorized"}, status=401)
            order = await Order.get_or_none(id=order_id)
            if order is None or not self._token_matches(order, token):
                return web.json_response({"ok": False, "message": "order not found"}, status=404)

        try:
            codes = await self.orders.get_codes(order_id)
        except LookupError:
            return web.json_response({"ok": False, "message": "order not found"}, status=404)
        return web.json_response(
            {
                "ok": True,
                "codes": [
                    {"id": code.id, "code": code.code, "coins": code.coins, "isRedeemed": code.is_redeemed}
                    for code in codes
                ],
            }
        )

    async def rankings(self, request: web.Request):
        limit = self._to_int(request.query.get("limit"), default=10) or 10
        rows = await get_leaderboard(limit)
        return web.json_response(
            {"ok": True, "month": current_month_label(), "rankings": [ranking_to_dict(row) for row in rows]}
        )

    async def hero(self, request: web.Request):
        setting = await get_active_hero()
        return web.json_response({"ok": True, "hero": hero_to_dict(setting) if setting else None})

    async def admin_list_hero(self, request: web.Request):
        rows = await HeroSetting.all().order_by("-updated_at")
        return web.json_response({"ok": True, "settings": [hero_to_dict(row) for row in rows]})

    async def admin_create_hero(self, request: web.Request):
        payload = await self._safe_json(request)
        if payload is None:
            return web.json_response({"ok": False, "message": "invalid json body"}, status=400)
        background = str(payload.get("backgroundImage") or "").strip()
        if not background:
            return web.json_response({"ok": False, "message": "Background image is required"}, status=400)

        is_active = payload.get("isActive", True)
        if not isinstance(is_active, bool):
            return web.json_response({"ok": False, "message": "isActive must be a boolean"}, status=400)

        setting = await HeroSetting.create(
            background_image=background,
            video_thumbnail=str(payload.get("videoThumbnail") or "").strip() or None,
            is_active=is_active,
        )
        return web.json_response({"ok": True, "setting": hero_to_dict(setting)}, status=201)

    async def admin_update_hero(self, request: web.Request):
        setting = await HeroSetting.get_or_none(id=self._to_int(request.match_info.get("hero_id"), default=0))
        if setting is None:
            return web.json_response({"ok": False, "message": "hero setting not found"}, status=404)
        payload = await self._safe_json(request)
        if payload is None:
            return web.json_response({"ok": False, "message": "invalid json body"}, status=400)

        if "backgroundImage" in payload:
            background = str(payload.get("backgroundImage") or "").strip()
            if not background:
                return web.json_response({"ok": False, "message": "Background image is required"}, status=400)
            setting.background_image = background
        if "videoThumbnail" in payload:
            setting.video_thumbnail = str(payload.get("videoThumbnail") or "").strip() or None
        if "isActive" in payload:
            if not isinstance(payload["isActive"], bool):
                return web.json_response({"ok": False, "message": "isActive must be a boolean"}, status=400)
            setting.is_active = payload["isActive"]
        await setting.save()
        return web.json_response({"ok": True, "setting": hero_to_dict(setting)})

    async def admin_delete_hero(self, request: web.Request):
        deleted = await HeroSetting.filter(id=self._to_int(request.match_info.get("hero_id"), default=0)).delete()
        if not deleted:
            return web.json_response({"ok": False, "message": "hero setting not found"}, status=404)
        return web.json_response({"ok": True})

    async def admin_list_rankings(self, request: web.Request):
        rows = await PlayerRanking.all().order_by("rank")
        return web.json_response({"ok": True, "rankings": [ranking_to_dict(row) for row in rows]})

    async def admin_upsert_ranking(self, request: web.Request):
        payload = await self._safe_json(request)
        if payload is None:
            return web.json_response({"ok": False, "message": "invalid json body"}, status=400)

        user_id = str(payload.get("userId") or "").strip()
        player_name = str(payload.get("playerName") or "").strip()
        stars = self._to_int(payload.get("stars"), default=None)
        rank = self._to_int(payload.get("rank"), default=None)
        if not user_id or not player_name or stars is None or rank is None or rank < 1:
            return web.json_response(
                {"ok": False, "message": "userId, playerName, stars and a positive rank are required"},
                status=400,
            )

        ranking = await upsert_ranking(
            user_id=user_id,
            player_name=player_name,
            stars=stars,
            rank=rank,
            image_url=str(payload.get("imageUrl") or "").strip() or None,
        )
        return web.json_response({"ok": True, "ranking": ranking_to_dict(ranking)})

    async def admin_update_ranking(self, request: web.Request):
        ranking = await PlayerRanking.get_or_none(id=self._to_int(request.match_info.get("ranking_id"), default=0))
        if ranking is None:
            return web.json_response({"ok": False, "message": "ranking not found"}, status=404)
        payload = await self._safe_json(request)
        if payload is None:
            return web.json_response({"ok": False, "message": "invalid json body"}, status=400)

        if "playerName" in payload:
            ranking.player_name = str(payload.get("playerName") or "").strip() or ranking.player_name
        for field, attr in (("stars", "stars"), ("rank", "rank")):
            if field in payload:
                value = self._to_int(payload.get(field), default=None)
                if value is None:
                    return web.json_response({"ok": False, "message": f"{field} must be an integer"}, status=400)
                setattr(ranking, attr, value)
        if "imageUrl" in payload:
            ranking.image_url = str(payload.get("imageUrl") or "").strip() or None
        await ranking.save()
        return web.json_response({"ok": True, "ranking": ranking_to_dict(ranking)})

    async def admin_delete_ranking(self, request: web.Request):
        deleted = await PlayerRanking.filter(id=self._to_int(request.match_info.get("ranking_id"), default=0)).delete()
        if not deleted:
            return web.json_response({"ok": False, "message": "ranking not found"}, status=404)
        return web.json_response({"ok": True})

    async def admin_expire_orders(self, request: web.Request):
        payload = await self._safe_json(request) or {}
        ttl = self._to_int(payload.get("ttlMinutes"), default=None)
        expired = await self.orders.expire_stale_orders(ttl)
        return web.json_response({"ok": True, "expired": expired})

    async def _safe_json(self, request: web.Request) -> Optional[dict[str, Any]]:
        try:
            body = await request.json()
        except Exception:
            return None
        if not isinstance(body, dict):
            return None
        return body

    @staticmethod
    def _parse_uuid(value: Any) -> Optional[str]:
        try:
            return str(uuid.UUID(str(value)))
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _to_int(value: Any, default: Optional[int]) -> Optional[int]:
        try:
            return int(value)
        except (TypeError, ValueError):
            return default
