# schemas/api_models.py
# ============================================================================
# TLANGAU SERVER - API REQUEST MODELS
# ============================================================================
# Request bodies for the HTTP surface. Field names follow the wire format
# the clients already send (camelCase).
# ============================================================================

import re
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from schemas.ledger_models import PAID_SERVICE_IDS

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_email(value: Any) -> str:
    email = str(value or "").strip().lower()
    if not EMAIL_PATTERN.match(email):
        raise ValueError("Invalid email address")
    return email


# ============================================================================
# SECTION 1: PAYMENTS
# ============================================================================

class CreatePaymentRequest(BaseModel):
    email: str
    services: List[str]

    @field_validator("email", mode="before")
    @classmethod
    def _email(cls, v):
        return normalize_email(v)

    @field_validator("services")
    @classmethod
    def _services(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("At least one service must be selected")
        unique: List[str] = []
        for service_id in v:
            if service_id not in PAID_SERVICE_IDS:
                raise ValueError("Invalid service selected")
            if service_id not in unique:
                unique.append(service_id)
        return unique


class VerifyPaymentRequest(BaseModel):
    orderId: str = Field(min_length=1)


# ============================================================================
# SECTION 2: ACCESS CODES
# ============================================================================

class ValidateCodeRequest(BaseModel):
    code: str = Field(min_length=1)
    email: str
    accountId: Optional[str] = None

    @field_validator("email", mode="before")
    @classmethod
    def _email(cls, v):
        return normalize_email(v)

    @field_validator("code")
    @classmethod
    def _code(cls, v: str) -> str:
        v = v.strip().upper()
        if not v:
            raise ValueError("Access code is required")
        return v


class EmailRequest(BaseModel):
    email: str

    @field_validator("email", mode="before")
    @classmethod
    def _email(cls, v):
        return normalize_email(v)


# ============================================================================
# SECTION 3: ADMIN
# ============================================================================

class AdminLoginRequest(BaseModel):
    password: str = Field(min_length=1)


# ============================================================================
# SECTION 4: NOTIFICATIONS
# ============================================================================

class SendRingRequest(BaseModel):
    fcmTopicName: Optional[str] = None
    bundleName: Optional[str] = None
    topicName: Optional[str] = None
    ringType: Optional[str] = None


class SendMessageRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    fcmTopicName: Optional[str] = None
    fcmTopicNames: Optional[List[str]] = None
    bundleName: Optional[str] = None
    messageText: Optional[str] = None
    attachmentUrl: Optional[str] = None
    locationLatitude: Optional[Any] = None
    locationLongitude: Optional[Any] = None
    locationAddress: Optional[str] = None
    documentUrl: Optional[str] = None
    documentName: Optional[str] = None
    audioUrl: Optional[str] = None
    audioDuration: Optional[Any] = None
    isBroadcast: bool = False

    @property
    def topics(self) -> List[str]:
        if self.fcmTopicNames:
            return [t for t in self.fcmTopicNames if t]
        return [self.fcmTopicName] if self.fcmTopicName else []

    @property
    def extras(self) -> dict:
        return {
            "attachmentUrl": self.attachmentUrl,
            "locationLatitude": self.locationLatitude,
            "locationLongitude": self.locationLongitude,
            "locationAddress": self.locationAddress,
            "documentUrl": self.documentUrl,
            "documentName": self.documentName,
            "audioUrl": self.audioUrl,
            "audioDuration": self.audioDuration,
        }
