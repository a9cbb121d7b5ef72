from pydantic import BaseModel, ConfigDict, EmailStr, Field
from typing import Any, Literal, Optional
from datetime import datetime


class WireModel(BaseModel):
    """Base for models whose JSON keys are camelCase on the wire."""
    model_config = ConfigDict(populate_by_name=True)


# ============================================
# QR Code Schemas
# ============================================

class QRPayload(BaseModel):
    """JSON embedded in a displayed stamp QR code."""
    type: Literal["stamp"]
    code: str = Field(..., min_length=1)
    card_id: str = Field(..., min_length=1)
    merchant_id: str = Field(..., min_length=1)
    timestamp: int  # epoch milliseconds at serialization time


class QRCodeCreate(WireModel):
    card_id: str = Field(..., alias="cardId", min_length=1)
    expires_in_hours: int = Field(default=24, alias="expiresInHours")
    is_single_use: bool = Field(default=False, alias="isSingleUse")
    security_level: str = Field(default="M", alias="securityLevel")


class QRCodeRecord(BaseModel):
    id: str
    merchant_id: str
    card_id: str
    code: str
    created_at: Optional[datetime] = None
    expires_at: datetime
    is_single_use: bool = False
    is_used: bool = False


class QRCodeResponse(WireModel):
    success: bool = True
    qr_code: QRCodeRecord = Field(..., alias="qrCode")
    qr_value: str = Field(..., alias="qrValue")
    qr_image: Optional[str] = Field(default=None, alias="qrImage")  # PNG data URL


class QRCodeListResponse(WireModel):
    success: bool = True
    qr_codes: list[QRCodeRecord] = Field(default_factory=list, alias="qrCodes")


# ============================================
# Stamp Issuance Schemas
# ============================================

class StampIssueRequest(WireModel):
    method: str
    qr_code: Optional[str] = Field(default=None, alias="qrCode")  # serialized QRPayload
    card_id: Optional[str] = Field(default=None, alias="cardId")
    customer_id: Optional[str] = Field(default=None, alias="customerId")
    customer_email: Optional[EmailStr] = Field(default=None, alias="customerEmail")
    count: Optional[Any] = None  # range-checked by the issuance engine


class StampCardDefinition(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    total_stamps: int
    reward: str
    business_logo: Optional[str] = None
    business_color: Optional[str] = None


class CustomerStampCard(BaseModel):
    id: str
    card_id: str
    customer_id: str
    current_stamps: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    card: StampCardDefinition


class TransactionRecord(BaseModel):
    id: Optional[str] = None
    card_id: str
    customer_id: str
    merchant_id: str
    type: str
    count: int = 0
    reward_code: Optional[str] = None
    timestamp: Optional[datetime] = None
    redeemed_at: Optional[datetime] = None
    metadata: dict = {}


class CustomerInfo(BaseModel):
    id: str
    email: Optional[str] = None


class StampIssueResponse(WireModel):
    success: bool = True
    message: str
    stamp_card: CustomerStampCard = Field(..., alias="stampCard")
    stamps_added: int = Field(..., alias="stampsAdded")
    reward_earned: bool = Field(..., alias="rewardEarned")
    reward_code: Optional[str] = Field(default=None, alias="rewardCode")
    transaction: Optional[TransactionRecord] = None
    customer_info: CustomerInfo = Field(..., alias="customerInfo")


# ============================================
# Reward Schemas
# ============================================

class RedeemRequest(WireModel):
    reward_code: str = Field(..., alias="rewardCode")


class RedeemResponse(WireModel):
    success: bool = True
    message: str = "Reward redeemed"
    transaction: TransactionRecord
    reward: str
    customer_info: CustomerInfo = Field(..., alias="customerInfo")


class ClaimRequest(WireModel):
    card_id: str = Field(..., alias="cardId", min_length=1)


class ClaimResponse(WireModel):
    success: bool = True
    reward_code: str = Field(..., alias="rewardCode")
    reward: str
    stamp_card: CustomerStampCard = Field(..., alias="stampCard")
    transaction: Optional[TransactionRecord] = None


# ============================================
# Customer Schemas
# ============================================

class MergePendingResponse(WireModel):
    success: bool = True
    merged: bool
    cards_moved: int = Field(default=0, alias="cardsMoved")
    cards_combined: int = Field(default=0, alias="cardsCombined")


class ErrorResponse(WireModel):
    success: bool = False
    error: str
    error_type: str = Field(..., alias="errorType")
