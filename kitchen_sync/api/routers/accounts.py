import logging
from fastapi import APIRouter, HTTPException, Depends
from sqlalchemy.orm import Session
from kitchen_sync.calendarsync.auth_storage import (
    AccountNotFoundError,
    AuthStorageError,
    EncryptionToolNotFoundError,
    is_age_available,
    setup_account_auth_storage,
)
from kitchen_sync.encryption import TokenEncryptionError
from kitchen_sync.models.accounts import Account
from kitchen_sync.schemas.accounts import AuthStorageSetupResponse, AuthStorageStatusResponse
from kitchen_sync.database import get_db

logger = logging.getLogger(__name__)

router = APIRouter()

@router.post("/{account_id}/auth-storage", response_model=AuthStorageSetupResponse)
async def setup_auth_storage(account_id: str, db: Session = Depends(get_db)):
    """Generates and stores the encrypted CalendarSync auth storage for an account."""
    try:
        calendar_count = await setup_account_auth_storage(db, account_id)
    except AccountNotFoundError:
        raise HTTPException(status_code=404, detail="Account not found")
    except EncryptionToolNotFoundError as e:
        raise HTTPException(status_code=500, detail={"code": e.code, "message": str(e)})
    except AuthStorageError as e:
        status_code = 400 if e.code == "MISSING_REFRESH_TOKEN" else 500
        raise HTTPException(status_code=status_code, detail={"code": e.code, "message": str(e)})
    except TokenEncryptionError as e:
        logger.error(f"Failed to decrypt tokens for account {account_id}: {e}")
        raise HTTPException(status_code=500, detail={"code": "TOKEN_DECRYPTION_FAILED", "message": str(e)})

    return AuthStorageSetupResponse(
        success=True,
        message="Auth storage created successfully",
        calendar_count=calendar_count,
    )

@router.get("/{account_id}/auth-storage", response_model=AuthStorageStatusResponse)
async def get_auth_storage_status(account_id: str, db: Session = Depends(get_db)):
    """Reports whether an account has auth storage and whether age is installed."""
    account = db.query(Account).filter(Account.id == account_id).first()
    if not account:
        raise HTTPException(status_code=404, detail="Account not found")

    return AuthStorageStatusResponse(
        has_auth_storage=bool(account.auth_storage),
        age_available=await is_age_available(),
        calendar_count=len(account.calendars),
        email=account.email,
        updated_at=account.auth_storage_updated_at,
    )
