from fastapi import APIRouter

from .routes import (
    customers,
    health,
    qr_codes,
    rewards,
    stamps,
)

api_router = APIRouter()

# Health check
api_router.include_router(health.router, tags=["health"])

# Merchant QR codes
api_router.include_router(qr_codes.router, prefix="/qr-codes", tags=["qr-codes"])

# Stamp issuance and rewards
api_router.include_router(stamps.router, prefix="/stamps", tags=["stamps"])
api_router.include_router(rewards.router, prefix="/rewards", tags=["rewards"])

# Customer accounts
api_router.include_router(customers.router, prefix="/customers", tags=["customers"])
