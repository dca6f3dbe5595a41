"""
FastAPI host scaffolding shared by request security layer services.
"""

import os
import time
from typing import Dict, Optional

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from shared.config import SecuritySettings, get_config
from shared.errors import RateLimitExceeded, SecurityLayerException
from shared.logging import clear_context, configure_logging, get_logger, set_request_id
from shared.metrics import get_metrics_collector

REQUEST_ID_HEADER = "X-Request-ID"


class BaseService:
    """Base service: logging, metrics, health, and error mapping."""

    def __init__(self, service_name: str, settings: Optional[SecuritySettings] = None):
        self.service_name = service_name
        self.config = settings or get_config(service_name=service_name)
        self.metrics = get_metrics_collector(service_name)
        self._start_time = time.time()

        configure_logging(service_name, self.config.log_level, self.config.environment)
        self.logger = get_logger(f"{service_name}.http")

        self.app = self._create_app()
        self._setup_middleware()
        self._setup_routes()

    def _create_app(self) -> FastAPI:
        local = self.config.environment == "development"
        return FastAPI(
            title=f"{self.service_name.title()} Service",
            description=f"Request Security Layer - {self.service_name.title()} Service",
            version="1.0.0",
            docs_url="/docs" if local else None,
            redoc_url="/redoc" if local else None,
        )

    def _setup_middleware(self):
        """CORS limited to trusted origins, plus request timing and correlation."""
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=self.config.trusted_origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
            allow_headers=["Content-Type", REQUEST_ID_HEADER, "X-Session-ID", self.config.csrf_header_name],
            expose_headers=[REQUEST_ID_HEADER],
        )

        @self.app.middleware("http")
        async def add_request_timing(request: Request, call_next):
            started = time.perf_counter()
            request_id = set_request_id(request.headers.get(REQUEST_ID_HEADER))

            try:
                response = await call_next(request)
                duration = time.perf_counter() - started
                self.logger.info(
                    "HTTP request",
                    method=request.method,
                    path=request.url.path,
                    status_code=response.status_code,
                    duration_ms=round(duration * 1000, 2),
                )
            finally:
                clear_context()

            self.metrics.record_http_request(request.method, request.url.path, response.status_code, duration)
            response.headers[REQUEST_ID_HEADER] = request_id
            return response

    def _setup_routes(self):
        @self.app.get("/health")
        async def health_check():
            """Health check endpoint."""
            try:
                dependencies = await self._check_dependencies()
            except Exception as e:
                self.logger.error("Health check failed", error=str(e))
                self.metrics.record_health_check("error")
                return JSONResponse(
                    status_code=503,
                    content={"service": self.service_name, "status": "error", "error": str(e)},
                )

            self.metrics.record_health_check("ok")
            return {
                "service": self.service_name,
                "status": "ok",
                "uptime_seconds": round(time.time() - self._start_time, 3),
                "dependencies": dependencies,
                "environment": self.config.environment,
                "security_level": self.config.security_level,
                "version": "1.0.0",
                "commit": os.getenv("GIT_COMMIT", "unknown"),
            }

        @self.app.get("/metrics")
        async def metrics_endpoint():
            """Prometheus metrics endpoint."""
            return Response(content=generate_latest(self.metrics.registry), media_type=CONTENT_TYPE_LATEST)

        self.app.add_exception_handler(SecurityLayerException, self._handle_security_error)
        self.app.add_exception_handler(Exception, self._handle_unexpected_error)

    async def _handle_security_error(self, request: Request, exc: SecurityLayerException) -> JSONResponse:
        # Full details go to the log; blocking errors reach the caller without them.
        self.logger.warning(
            "Security layer error",
            path=request.url.path,
            code=exc.code,
            message=exc.message,
            details=exc.details,
        )
        self.metrics.record_error(exc.code)
        return JSONResponse(status_code=self.status_code_for(exc), content=exc.to_response().model_dump())

    async def _handle_unexpected_error(self, request: Request, exc: Exception) -> JSONResponse:
        self.logger.error("Unhandled exception", path=request.url.path, error=str(exc), exc_info=True)
        self.metrics.record_error("INTERNAL_ERROR")
        return JSONResponse(
            status_code=500,
            content={"code": "INTERNAL_ERROR", "message": "Internal server error", "details": {}},
        )

    @staticmethod
    def status_code_for(exc: SecurityLayerException) -> int:
        """HTTP status for a security layer error."""
        if isinstance(exc, RateLimitExceeded):
            return 429
        if exc.blocking:
            return 403
        return 400

    async def _check_dependencies(self) -> Dict[str, str]:
        """Check service dependencies. Override in subclasses."""
        return {}

    def run(self):
        """Run the service under uvicorn."""
        import uvicorn

        uvicorn.run(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level=self.config.log_level.lower(),
        )
