"""
Authentication boundary for the billing API.

Session handling lives outside the billing core; the dashboard issues a
JWT whose ``sub`` is the account id and whose ``account_type`` claim is one
of client, lawyer or admin. The claim is validated here, before any core
call, and the resolved account id is passed explicitly from then on.
"""
import os
from datetime import datetime, timedelta, timezone
from enum import Enum

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from .errors import ValidationError

security = HTTPBearer()
JWT_SECRET = os.environ.get('JWT_SECRET', 'token-billing-secret-key-change-in-production')
JWT_ALGORITHM = "HS256"


class AccountType(str, Enum):
    CLIENT = "client"
    LAWYER = "lawyer"
    ADMIN = "admin"


class AccountRef(BaseModel):
    account_id: str
    account_type: AccountType

    @property
    def is_admin(self) -> bool:
        return self.account_type is AccountType.ADMIN


def parse_account(claims: dict) -> AccountRef:
    """Validate token claims into an AccountRef."""
    account_id = claims.get("sub")
    if not account_id or not isinstance(account_id, str):
        raise ValidationError("Token has no account id")

    raw_type = str(claims.get("account_type", "")).lower()
    try:
        account_type = AccountType(raw_type)
    except ValueError:
        raise ValidationError(f"Unsupported account type: {raw_type or 'missing'}")

    return AccountRef(account_id=account_id, account_type=account_type)


def create_token(account_id: str, account_type: AccountType = AccountType.CLIENT) -> str:
    payload = {
        "sub": account_id,
        "account_type": AccountType(account_type).value,
        "exp": datetime.now(timezone.utc) + timedelta(days=7)
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


async def get_current_account(credentials: HTTPAuthorizationCredentials = Depends(security)) -> AccountRef:
    """Verify JWT token and return the calling account"""
    try:
        payload = jwt.decode(credentials.credentials, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        return parse_account(payload)
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")
    except ValidationError as e:
        raise HTTPException(status_code=401, detail=e.message)


async def get_admin_account(account: AccountRef = Depends(get_current_account)) -> AccountRef:
    """Check if account is admin"""
    if not account.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return account
