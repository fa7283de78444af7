"""
Access-code routes: redemption, lookup, test email.
"""

import structlog
from fastapi import APIRouter, Depends

from api.dependencies import AppServices, get_services
from api.errors import ApiError
from schemas.api_models import EmailRequest, ValidateCodeRequest
from schemas.ledger_models import to_iso

logger = structlog.get_logger().bind(component="access")

router = APIRouter(prefix="/api")


@router.post("/validate-code")
async def validate_code(body: ValidateCodeRequest, services: AppServices = Depends(get_services)):
    result = await services.gate.redeem(body.code, body.email, body.accountId)
    return result.to_response()


@router.post("/get-code-info")
async def get_code_info(body: EmailRequest, services: AppServices = Depends(get_services)):
    access_code = await services.repository.get_latest_code_by_email(body.email)
    if access_code is None:
        return {"success": False, "valid": False, "message": "No access code found for this email"}

    return {
        "success": True,
        "code": access_code.code,
        "expiresAt": to_iso(access_code.expires_at) if access_code.expires_at else None,
        "used": access_code.used,
        "services": access_code.entitled_services,
        "message": "Access code info retrieved",
    }


@router.post("/test-email")
async def test_email(body: EmailRequest, services: AppServices = Depends(get_services)):
    if not services.email_service.configured:
        raise ApiError(500, message="Email service not configured.")

    sent = await services.email_service.send_access_code(body.email, "TEST123456", ["ring", "message"])
    if not sent:
        raise ApiError(500, message="Failed to send test email. Check server logs.")
    return {"success": True, "message": "Test email sent! Check your inbox."}
