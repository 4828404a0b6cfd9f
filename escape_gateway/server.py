"""HTTP surface for the escape gateway (FastAPI).

Endpoints:
    POST /v1/escape/submit                Anonymous escape request submission
    POST /v1/escape/update                Reviewer update (safety team)
    POST /v1/escape/disable-location      Disable location features (safety team)
    POST /v1/escape/sever-parent          Sever parent access (safety team)
    POST /v1/escape/notification-stealth  Activate notification stealth (safety team)
    POST /v1/audit/seal                   Seal a request's records (safety team)
    POST /v1/audit/unseal                 Unseal records (legal team)
    POST /v1/audit/sealed                 Read sealed entries (compliance / legal)
    GET  /v1/audit/family/{familyId}      Family audit log, sealed entries excluded
    GET  /v1/health                       Health check
    GET  /metrics                         Prometheus metrics
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

from fastapi import Body, Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .auth import Capabilities, TokenAuth
from .errors import INVALID_ARGUMENT, EscapeError, escape_error
from .gateway import EscapeGateway
from .metrics import instrument_fastapi

logger = logging.getLogger("escape_gateway.server")


def create_app(gateway: Optional[EscapeGateway] = None, token_auth: Optional[TokenAuth] = None) -> FastAPI:
    """Create FastAPI application with gateway endpoints."""
    from . import __version__ as escape_version

    if gateway is None:
        gateway = EscapeGateway.from_env()
    if token_auth is None:
        token_auth = TokenAuth.load_from_env()

    app = FastAPI(
        title="Escape Gateway",
        description="Sealed audit and escape-propagation engine",
        version=escape_version,
    )
    app.state.gateway = gateway

    @app.exception_handler(EscapeError)
    async def _escape_error_handler(request: Request, exc: EscapeError):
        return JSONResponse(status_code=int(exc.http_status or 400), content=exc.as_dict())

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(request: Request, exc: RequestValidationError):
        # Never echo the submitted body back.
        fields = [
            {"loc": ".".join(str(p) for p in err.get("loc", ())), "type": err.get("type", "")}
            for err in exc.errors()
        ]
        err = escape_error(INVALID_ARGUMENT, "Invalid input", fields=fields)
        return JSONResponse(status_code=err.http_status, content=err.as_dict())

    def caller(authorization: Optional[str] = Header(default=None)) -> Capabilities:
        return token_auth.resolve(authorization)

    # ---------------------------
    # Observability (/metrics)
    # ---------------------------
    metrics_token = (os.getenv("ESCAPE_METRICS_TOKEN", "") or "").strip()

    def _authorize_metrics(req: Request) -> bool:
        if not metrics_token:
            return True
        authz = (req.headers.get("Authorization") or "").strip()
        if authz.lower().startswith("bearer ") and authz.split(" ", 1)[1].strip() == metrics_token:
            return True
        return (req.headers.get("X-Metrics-Token") or "").strip() == metrics_token

    instrument_fastapi(app, authorize=_authorize_metrics)

    # ---------------------------
    # Escape requests and actions
    # ---------------------------

    @app.post("/v1/escape/submit")
    async def submit_escape(request: Request, payload: Dict[str, Any] = Body(...), caps: Capabilities = Depends(caller)):
        client_ip = request.client.host if request.client else None
        return await gateway.submit_escape_request(caps, payload, client_ip=client_ip)

    @app.post("/v1/escape/update")
    async def update_escape(payload: Dict[str, Any] = Body(...), caps: Capabilities = Depends(caller)):
        return await gateway.update_escape_request(caps, payload)

    @app.post("/v1/escape/disable-location")
    async def disable_location(payload: Dict[str, Any] = Body(...), caps: Capabilities = Depends(caller)):
        return await gateway.disable_location_features(caps, payload)

    @app.post("/v1/escape/sever-parent")
    async def sever_parent(payload: Dict[str, Any] = Body(...), caps: Capabilities = Depends(caller)):
        return await gateway.sever_parent_access(caps, payload)

    @app.post("/v1/escape/notification-stealth")
    async def notification_stealth(payload: Dict[str, Any] = Body(...), caps: Capabilities = Depends(caller)):
        return await gateway.activate_notification_stealth(caps, payload)

    # ---------------------------
    # Sealed audit
    # ---------------------------

    @app.post("/v1/audit/seal")
    async def seal_entries(payload: Dict[str, Any] = Body(...), caps: Capabilities = Depends(caller)):
        return await gateway.seal_escape_audit_entries(caps, payload)

    @app.post("/v1/audit/unseal")
    async def unseal_entries(payload: Dict[str, Any] = Body(...), caps: Capabilities = Depends(caller)):
        return await gateway.unseal_audit_entries(caps, payload)

    @app.post("/v1/audit/sealed")
    async def sealed_entries(payload: Dict[str, Any] = Body(...), caps: Capabilities = Depends(caller)):
        return await gateway.get_sealed_audit_entries(caps, payload)

    @app.get("/v1/audit/family/{family_id}")
    async def family_audit_log(family_id: str, limit: Optional[int] = None, caps: Capabilities = Depends(caller)):
        payload: Dict[str, Any] = {"familyId": family_id}
        if limit is not None:
            payload["limit"] = limit
        return await gateway.get_family_audit_log(caps, payload)

    @app.get("/v1/health")
    async def health_check():
        """Health check endpoint."""
        guard = getattr(gateway.store, "guard", None)
        locked = guard is not None and guard.locked()
        return {
            "status": "degraded" if locked else "healthy",
            "version": escape_version,
            "store": type(gateway.store).__name__,
            "signing_enabled": gateway.signer is not None,
            "store_locked_down": locked,
        }

    return app


def main():
    """
    Main entry point for the escape-gateway CLI.

    Usage:
        escape-gateway                    # Start on default port 8000
        escape-gateway --port 9000        # Start on custom port
        escape-gateway --host 127.0.0.1   # Bind to localhost only
    """
    import argparse

    parser = argparse.ArgumentParser(
        description="Escape Gateway - sealed audit and escape-propagation engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
    ESCAPE_STORE                memory | sqlite (default: memory)
    ESCAPE_DB_PATH              SQLite path when ESCAPE_STORE=sqlite
    ESCAPE_API_TOKENS_JSON      Bearer token -> identity map
    ESCAPE_AUDIT_SIGNING_KEY    Hex Ed25519 seed for signing sealed entries
    ESCAPE_PROXY_HEADERS        If set (1/true), trust X-Forwarded-* headers
        """,
    )
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")
    parser.add_argument("--proxy-headers", action="store_true", help="Trust X-Forwarded-* headers (for reverse proxy)")
    parser.add_argument("--forwarded-allow-ips", default=None, help="Comma-separated IPs allowed to set X-Forwarded-*")
    args = parser.parse_args()

    import uvicorn

    logging.basicConfig(level=os.getenv("ESCAPE_LOG_LEVEL", "INFO").upper())
    logger.info("Starting escape gateway on %s:%s", args.host, args.port)

    app = create_app()

    env_proxy = os.environ.get("ESCAPE_PROXY_HEADERS", "").strip()
    proxy_headers = args.proxy_headers or (env_proxy.lower() in ("1", "true", "yes"))
    forwarded_allow_ips = args.forwarded_allow_ips or os.environ.get("ESCAPE_FORWARDED_ALLOW_IPS")

    uvicorn.run(app, host=args.host, port=args.port, proxy_headers=proxy_headers, forwarded_allow_ips=forwarded_allow_ips)
    return 0


if __name__ == "__main__":
    import sys
    sys.exit(main() or 0)
