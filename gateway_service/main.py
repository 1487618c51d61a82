import asyncio
import logging
import secrets
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi import status as http_status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from pydantic import ValidationError

from common.error_handling import BusinessLogicError, InvalidInputError, add_error_handlers
from common.rate_limit import RateLimiter
from common.schemas import PaymentResponse, PaymentStatus, PayRequest
from common.settings import Settings
from gateway_service.events import SubscriptionClosed
from gateway_service.service import PaymentService, build_service

VERSION = "1.0.0"

logger = logging.getLogger(__name__)

basic_auth = HTTPBasic()


async def _retention_loop(service: PaymentService):
    while True:
        await asyncio.sleep(service.settings.retention_interval_seconds)
        try:
            await service.apply_retention()
        except Exception as e:
            logger.error(f"Retention run failed: {e}")


FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


async def _read_pay_request(request: Request) -> PayRequest:
    """Fields come from the query string, overridden by a JSON or form body."""
    data = dict(request.query_params)
    content_type = request.headers.get("content-type", "")
    if content_type.startswith(FORM_CONTENT_TYPES):
        form = await request.form()
        data.update((key, value) for key, value in form.items() if isinstance(value, str))
    elif await request.body():
        try:
            body = await request.json()
        except ValueError:
            raise InvalidInputError("request body is not valid JSON")
        if not isinstance(body, dict):
            raise InvalidInputError("request body must be a JSON object")
        data.update(body)
    try:
        return PayRequest.model_validate(data)
    except ValidationError as e:
        raise RequestValidationError(e.errors())


def create_app(settings: Optional[Settings] = None, service: Optional[PaymentService] = None) -> FastAPI:
    settings = settings or (service.settings if service else Settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        svc = service or build_service(settings)
        app.state.service = svc
        rearmed = await svc.start()
        logger.info(f"Payment gateway {VERSION} started, {rearmed} payment(s) re-armed")
        retention = None
        if settings.retention_days is not None:
            retention = asyncio.create_task(_retention_loop(svc))
        try:
            yield
        finally:
            if retention is not None:
                retention.cancel()
            await svc.shutdown()
            logger.info("Payment gateway stopped")

    app = FastAPI(title="Payment Gateway", version=VERSION, lifespan=lifespan)
    app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])
    add_error_handlers(app)

    def get_service(request: Request) -> PaymentService:
        return request.app.state.service

    limiter = RateLimiter(settings.rate_limit_requests, settings.rate_limit_window_seconds)
    app.state.rate_limiter = limiter

    def rate_limited(endpoint: str):
        def check_rate_limit(request: Request):
            if not limiter.enabled:
                return None
            client_id = request.client.host if request.client else "unknown"
            result = limiter.check(client_id, endpoint)
            if not result["allowed"]:
                raise HTTPException(
                    status_code=429,
                    detail=f"Rate limit exceeded. Try again in {result['retry_after']} seconds",
                    headers={
                        "X-RateLimit-Limit": str(limiter.max_requests),
                        "X-RateLimit-Remaining": str(result["remaining"]),
                        "X-RateLimit-Reset": str(result["reset_time"]),
                        "Retry-After": str(result["retry_after"]),
                    },
                )
            return result

        return Depends(check_rate_limit)

    @app.get("/version", response_class=PlainTextResponse)
    async def version():
        return VERSION

    @app.get("/health")
    async def health(svc: PaymentService = Depends(get_service)):
        return {
            "ok": True,
            "service": "payment-gateway",
            "watching": len(svc.scheduler.active_accounts()),
            "circuit_breakers": svc.breaker_states(),
        }

    @app.get("/api/price", dependencies=[rate_limited("price")])
    async def price(currency: str, svc: PaymentService = Depends(get_service)):
        rate = await svc.get_rate(currency)
        return {"currency": currency.upper(), "price": str(rate)}

    @app.post("/api/pay", response_model=PaymentResponse, dependencies=[rate_limited("pay")])
    async def pay(request: Request, svc: PaymentService = Depends(get_service)):
        req = await _read_pay_request(request)
        payment, token = await svc.create_payment(req.amount, req.currency, req.state)
        return PaymentResponse.from_payment(payment, token, svc.remaining_seconds(payment))

    @app.get("/api/verify", response_model=PaymentResponse)
    async def verify(token: str = "", svc: PaymentService = Depends(get_service)):
        payment = await svc.verify_payment(token)
        return PaymentResponse.from_payment(payment, token, svc.remaining_seconds(payment))

    @app.websocket("/websocket")
    async def websocket_endpoint(websocket: WebSocket, token: str = ""):
        svc: PaymentService = websocket.app.state.service
        await websocket.accept()
        try:
            async with svc.watch_payment(token) as subscription:
                await _push_confirmations(websocket, subscription, token)
        except BusinessLogicError:
            await websocket.close(code=http_status.WS_1008_POLICY_VIOLATION)
        except (WebSocketDisconnect, SubscriptionClosed):
            pass

    if settings.admin_password:
        _mount_admin(app, settings, get_service)

    return app


async def _push_confirmations(websocket: WebSocket, subscription, token: str):
    """Forward events until the client goes away."""
    receive = asyncio.ensure_future(websocket.receive_text())
    event = asyncio.ensure_future(subscription.get())
    try:
        while True:
            done, _ = await asyncio.wait({receive, event}, return_when=asyncio.FIRST_COMPLETED)
            if event in done:
                payment = event.result().payment
                await websocket.send_text(PaymentResponse.from_payment(payment, token).model_dump_json())
                event = asyncio.ensure_future(subscription.get())
            if receive in done:
                receive.result()  # raises WebSocketDisconnect once the client is gone
                receive = asyncio.ensure_future(websocket.receive_text())
    finally:
        receive.cancel()
        event.cancel()


def _mount_admin(app: FastAPI, settings: Settings, get_service):
    def require_admin(credentials: HTTPBasicCredentials = Depends(basic_auth)):
        if not secrets.compare_digest(credentials.password.encode(), settings.admin_password.encode()):
            raise HTTPException(
                status_code=401,
                detail="invalid admin credentials",
                headers={"WWW-Authenticate": "Basic"},
            )

    admin = [Depends(require_admin)]

    @app.get("/admin/payments/active", dependencies=admin)
    async def active_payments(svc: PaymentService = Depends(get_service)):
        return [p.model_dump(mode="json") for p in await svc.list_active()]

    @app.get("/admin/payment", dependencies=admin)
    async def get_payment(account: str, svc: PaymentService = Depends(get_service)):
        return (await svc.get_payment(account)).model_dump(mode="json")

    @app.post("/admin/check", dependencies=admin)
    async def check_payment(account: str, svc: PaymentService = Depends(get_service)):
        return (await svc.check_payment(account)).model_dump(mode="json")

    @app.post("/admin/status", dependencies=admin)
    async def override_status(account: str, status: PaymentStatus, svc: PaymentService = Depends(get_service)):
        return (await svc.override_status(account, status)).model_dump(mode="json")


def main():
    import uvicorn

    settings = Settings()
    logging.basicConfig(level=settings.log_level)
    uvicorn.run(
        create_app(settings),
        host=settings.listen_host,
        port=settings.listen_port,
        ssl_certfile=settings.cert_file,
        ssl_keyfile=settings.key_file,
    )


if __name__ == "__main__":
    main()
