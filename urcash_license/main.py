from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI, Depends, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from urcash_license import __version__
from urcash_license.config import settings
from urcash_license.license_client import LicenseClient
from urcash_license.logging_config import setup_logging
from urcash_license.models import (
    ActivationRequest,
    ActivationResponse,
    ActivationResult,
    CacheClearResponse,
    CacheStats,
    CheckStatusRequest,
    CodeActivationRequest,
    FeatureCheckRequest,
    FeatureCheckResponse,
    HealthCheckResponse,
    LicenseStatusResponse,
    VerificationResponse,
    VerifyRequest,
)


def get_license_client(request: Request) -> LicenseClient:
    return request.app.state.license_client


def _activation_response(client: LicenseClient, result: ActivationResult) -> ActivationResponse:
    if not result.success:
        status_code = 422 if result.error_code in ("VALIDATION_ERROR", "ACTIVATION_CODE_REQUIRED") else 400
        raise HTTPException(
            status_code=status_code,
            detail={"message": result.message, "error_code": result.error_code},
        )
    return ActivationResponse(
        success=True,
        kind=result.kind.value,
        message=result.message,
        fell_back_to_first_activation=result.fell_back_to_first_activation,
        status=client.status(),
    )


def create_app(client_factory: Optional[Callable[[], LicenseClient]] = None, poll: bool = True) -> FastAPI:
    """
    Build the local license API. One LicenseClient lives for the whole
    application lifespan and is handed to the routes through dependencies.
    """
    factory = client_factory or (lambda: LicenseClient(settings))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        client = factory()
        app.state.license_client = client
        await client.init()
        if poll:
            client.start_polling()
        try:
            yield
        finally:
            await client.close()

    app = FastAPI(
        title="URCash License Client",
        description="License activation and premium feature entitlement for URCash",
        version=__version__,
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/api/license/status", response_model=LicenseStatusResponse)
    async def get_license_status(client: LicenseClient = Depends(get_license_client)):
        """
        Current license status as last resolved. Never contacts the server.
        """
        return client.status()

    @app.post("/api/license/check", response_model=LicenseStatusResponse)
    async def check_license(request: CheckStatusRequest, client: LicenseClient = Depends(get_license_client)):
        """
        Cache-first license check, or a forced server check with ``force_refresh``.
        """
        await client.check_license_status(request.force_refresh)
        return client.status()

    @app.post("/api/license/activate", response_model=ActivationResponse)
    async def activate_license(request: ActivationRequest, client: LicenseClient = Depends(get_license_client)):
        """
        Standard activation. Falls through to first activation when the
        server reports the device was never activated.
        """
        result = await client.activate_license(request.code)
        return _activation_response(client, result)

    @app.post("/api/license/first-activation", response_model=ActivationResponse)
    async def first_activation(request: CodeActivationRequest, client: LicenseClient = Depends(get_license_client)):
        result = await client.perform_first_activation(request.code)
        return _activation_response(client, result)

    @app.post("/api/license/activation", response_model=ActivationResponse)
    async def activate_with_code(request: CodeActivationRequest, client: LicenseClient = Depends(get_license_client)):
        """
        Redeem a premium add-on activation code.
        """
        result = await client.activate_with_code(request.code)
        return _activation_response(client, result)

    @app.post("/api/license/verify", response_model=VerificationResponse)
    async def verify_license(request: VerifyRequest, client: LicenseClient = Depends(get_license_client)):
        valid = await client.verify_license(request.include_server_check)
        return VerificationResponse(
            valid=valid,
            server_confirmed=valid and request.include_server_check,
            message="License verified" if valid else (client.error or "License verification failed"),
            error_code=None if valid else client.error_code,
        )

    @app.post("/api/license/refresh", response_model=LicenseStatusResponse)
    async def refresh_license(client: LicenseClient = Depends(get_license_client)):
        await client.force_refresh()
        return client.status()

    @app.post("/api/license/cache/clear", response_model=CacheClearResponse)
    async def clear_cache(client: LicenseClient = Depends(get_license_client)):
        """
        Clear the local license cache and ask the server to clear its own.
        A server failure does not fail the local clear.
        """
        server_cleared = await client.clear_cache()
        return CacheClearResponse(
            success=True,
            server_cleared=server_cleared,
            message="License cache cleared" if server_cleared else "Local license cache cleared, server cache unchanged",
        )

    @app.get("/api/license/cache/stats", response_model=CacheStats)
    async def cache_stats(client: LicenseClient = Depends(get_license_client)):
        return client.cache_stats()

    @app.post("/api/license/feature/check", response_model=FeatureCheckResponse)
    async def check_feature(request: FeatureCheckRequest, client: LicenseClient = Depends(get_license_client)):
        """
        Whether a premium feature is accessible right now. Denied while the
        license is still loading or unknown.
        """
        return {"feature": request.feature, "available": client.has_feature_access(request.feature)}

    @app.get("/health", response_model=HealthCheckResponse)
    async def health_check(client: LicenseClient = Depends(get_license_client)):
        return {
            "status": "healthy",
            "service": "urcash-license-client",
            "version": __version__,
            "installation_id": client.installation_id,
            "device_id": client.device_id,
        }

    return app


def run() -> None:
    import uvicorn
    setup_logging(settings.LOG_LEVEL, settings.LOG_JSON)
    uvicorn.run(create_app(), host="127.0.0.1", port=8000)


if __name__ == "__main__":
    run()
