import os
import hmac
from typing import Optional
from fastapi import Request
from fastapi.responses import JSONResponse
from core.config import logger, CRON_SECRET, ADMIN_SECRET, ADMIN_ALLOWLIST_IPS


firebase_enabled = False
try:
    import firebase_admin
    from firebase_admin import auth as fb_auth, credentials as fb_credentials

    FIREBASE_PROJECT_ID = os.getenv("FIREBASE_PROJECT_ID", "")
    FIREBASE_SERVICE_ACCOUNT_JSON = os.getenv("FIREBASE_SERVICE_ACCOUNT_JSON", "")
    FIREBASE_SERVICE_ACCOUNT_JSON_PATH = (os.getenv("FIREBASE_SERVICE_ACCOUNT_JSON_PATH", "") or "").strip().strip('"').strip("'")

    if not getattr(firebase_admin, "_apps", []):
        if FIREBASE_SERVICE_ACCOUNT_JSON:
            import json
            cred = fb_credentials.Certificate(json.loads(FIREBASE_SERVICE_ACCOUNT_JSON))
            firebase_admin.initialize_app(cred, {"projectId": FIREBASE_PROJECT_ID} if FIREBASE_PROJECT_ID else None)
        elif FIREBASE_SERVICE_ACCOUNT_JSON_PATH and os.path.isfile(FIREBASE_SERVICE_ACCOUNT_JSON_PATH):
            cred = fb_credentials.Certificate(FIREBASE_SERVICE_ACCOUNT_JSON_PATH)
            firebase_admin.initialize_app(cred, {"projectId": FIREBASE_PROJECT_ID} if FIREBASE_PROJECT_ID else None)
        elif FIREBASE_PROJECT_ID:
            firebase_admin.initialize_app(options={"projectId": FIREBASE_PROJECT_ID})
        else:
            raise RuntimeError("no Firebase credentials configured")
    firebase_enabled = True
    logger.info("Firebase Admin initialized")
except Exception as ex:
    logger.warning(f"Firebase Admin not initialized: {ex}")
    fb_auth = None  # type: ignore


def _bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization") or request.headers.get("Authorization")
    if not auth_header or not auth_header.lower().startswith("bearer "):
        return ""
    return auth_header.split(" ", 1)[1].strip()


def get_uid_from_request(request: Request) -> Optional[str]:
    token = _bearer_token(request)
    if not token:
        return None
    if not firebase_enabled or not fb_auth:
        return None
    try:
        decoded = fb_auth.verify_id_token(token)
        return decoded.get("uid")
    except Exception as ex:
        logger.warning(f"Token verification failed: {ex}")
        return None


def client_ip(request: Request) -> str:
    """Extract client IP from request, handling proxies."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"


def require_cron(request: Request) -> Optional[JSONResponse]:
    """Scheduler endpoints authenticate with `Authorization: Bearer <CRON_SECRET>`."""
    if not CRON_SECRET:
        return JSONResponse({"success": False, "error": "cron_not_configured"}, status_code=503)
    token = _bearer_token(request)
    if not token or not hmac.compare_digest(token, CRON_SECRET):
        return JSONResponse({"success": False, "error": "unauthorized"}, status_code=401)
    return None


def require_admin(request: Request) -> Optional[JSONResponse]:
    if not ADMIN_SECRET:
        return JSONResponse({"success": False, "error": "admin_not_configured"}, status_code=503)
    provided = (request.headers.get("X-Admin-Secret") or "").strip()
    if not provided or not hmac.compare_digest(provided, ADMIN_SECRET):
        return JSONResponse({"success": False, "error": "unauthorized"}, status_code=401)
    if ADMIN_ALLOWLIST_IPS:
        ip = client_ip(request)
        if ip and ip not in ADMIN_ALLOWLIST_IPS:
            return JSONResponse({"success": False, "error": "forbidden"}, status_code=403)
    return None
