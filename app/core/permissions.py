from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, status

from app.core.security import require_auth
from app.repositories.merchant import MerchantRepository

MERCHANT = "merchant"
CUSTOMER = "customer"


@dataclass(frozen=True)
class Principal:
    """The authenticated caller."""

    id: str
    role: str
    email: Optional[str] = None

    @property
    def is_merchant(self) -> bool:
        return self.role == MERCHANT


def get_current_principal(auth_payload: dict = Depends(require_auth)) -> Principal:
    """Resolve the JWT subject to a merchant or customer principal.

    A subject with a row in the merchants table is a merchant; every other
    authenticated user is a customer.
    """
    auth_id = auth_payload.get("sub")
    if not auth_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload: missing sub claim"
        )

    role = MERCHANT if MerchantRepository.get_by_id(auth_id) else CUSTOMER
    return Principal(id=auth_id, role=role, email=auth_payload.get("email"))


def require_merchant(principal: Principal = Depends(get_current_principal)) -> Principal:
    if not principal.is_merchant:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User is not registered as a merchant"
        )
    return principal


def require_customer(principal: Principal = Depends(get_current_principal)) -> Principal:
    if principal.is_merchant:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="This action is only available to customers"
        )
    return principal
