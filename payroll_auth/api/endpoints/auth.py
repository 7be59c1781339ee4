# payroll_auth/api/endpoints/auth.py
from typing import Any, Union

from fastapi import APIRouter, BackgroundTasks, Depends
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from payroll_auth.api.dependencies import get_current_active_user
from payroll_auth.crud import crud_mfa_recovery_code
from payroll_auth.db.session import get_db
from payroll_auth.models.email_otp import EmailOTPPurpose
from payroll_auth.models.user import User as UserModel
from payroll_auth.schemas.mfa import (
    BackupCodesResponse,
    ErrorResponse,
    MFADisableRequest,
    MFAEmailVerifyRequest,
    MFASendCodeRequest,
    MFASetupResponse,
    MFASetupVerifyRequest,
    MFAVerifyRequest,
    OkResponse,
)
from payroll_auth.schemas.token import LoginRequest, MFARequiredResponse, SessionResponse
from payroll_auth.schemas.user import AccountDetails, AccountSnapshot
from payroll_auth.services import mfa_challenge, mfa_enrollment
from payroll_auth.services.email_service import send_mfa_code_email

router = APIRouter()

_errors = {
    400: {"model": ErrorResponse, "description": "Invalid code"},
    401: {"model": ErrorResponse, "description": "Invalid credentials, expired ticket or session"},
    429: {"model": ErrorResponse, "description": "Too many attempts"},
}


# --- Login & second factor ---
@router.post(
    "/login",
    response_model=Union[SessionResponse, MFARequiredResponse],
    responses={
        200: {"description": "Session issued, or second factor required"},
        **_errors,
    },
)
async def login(
    *,
    db: AsyncSession = Depends(get_db),
    credentials: LoginRequest,
) -> Any:
    return await mfa_challenge.start_login(
        db, email=credentials.email, password=credentials.password
    )


@router.post("/mfa/verify", response_model=SessionResponse, responses=_errors)
async def verify_mfa_login(
    *,
    db: AsyncSession = Depends(get_db),
    mfa_data: MFAVerifyRequest,
) -> Any:
    return await mfa_challenge.verify_ticket(
        db, ticket=mfa_data.ticket, code=mfa_data.code, method=mfa_data.method
    )


@router.post("/mfa/send-code", response_model=OkResponse, responses=_errors)
async def send_login_code(
    *,
    db: AsyncSession = Depends(get_db),
    request_body: MFASendCodeRequest,
    background_tasks: BackgroundTasks,
) -> Any:
    email, code = await mfa_challenge.send_login_email_code(db, ticket=request_body.ticket)
    background_tasks.add_task(
        send_mfa_code_email, email_to=email, code=code, purpose=EmailOTPPurpose.LOGIN
    )
    return OkResponse()


# --- Authenticator app ---
@router.post("/mfa/setup", response_model=MFASetupResponse, responses=_errors)
async def setup_app_mfa(
    db: AsyncSession = Depends(get_db),
    current_user: UserModel = Depends(get_current_active_user),
) -> Any:
    setup = await mfa_enrollment.begin_totp_enrollment(db, user=current_user)
    return MFASetupResponse(
        secret=setup.secret,
        qr_code=setup.qr_code,
        otp_uri=setup.otp_uri,
        backup_codes=setup.backup_codes,
    )


@router.post("/mfa/setup/verify", response_model=OkResponse, responses=_errors)
async def verify_app_mfa_setup(
    *,
    db: AsyncSession = Depends(get_db),
    mfa_data: MFASetupVerifyRequest,
    current_user: UserModel = Depends(get_current_active_user),
) -> Any:
    updated_user = await mfa_enrollment.confirm_totp_enrollment(
        db, user=current_user, code=mfa_data.code, is_backup_code=mfa_data.is_backup_code
    )
    return OkResponse(user=AccountSnapshot.model_validate(updated_user))


# --- Email codes ---
@router.post("/mfa/email/setup", response_model=OkResponse, responses=_errors)
async def setup_email_mfa(
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    current_user: UserModel = Depends(get_current_active_user),
) -> Any:
    code = await mfa_enrollment.send_email_enrollment_code(db, user=current_user)
    background_tasks.add_task(
        send_mfa_code_email, email_to=current_user.email, code=code, purpose=EmailOTPPurpose.ENROLL
    )
    return OkResponse()


@router.post("/mfa/email/verify", response_model=OkResponse, responses=_errors)
async def verify_email_mfa_setup(
    *,
    db: AsyncSession = Depends(get_db),
    mfa_data: MFAEmailVerifyRequest,
    current_user: UserModel = Depends(get_current_active_user),
) -> Any:
    updated_user = await mfa_enrollment.confirm_email_enrollment(
        db, user=current_user, code=mfa_data.code
    )
    return OkResponse(user=AccountSnapshot.model_validate(updated_user))


# --- Disable & backup codes ---
@router.post("/mfa/disable", response_model=OkResponse, responses=_errors)
async def disable_mfa(
    *,
    db: AsyncSession = Depends(get_db),
    mfa_data: MFADisableRequest,
    current_user: UserModel = Depends(get_current_active_user),
) -> Any:
    updated_user = await mfa_enrollment.disable_mfa(db, user=current_user, password=mfa_data.password)
    return OkResponse(user=AccountSnapshot.model_validate(updated_user))


@router.post("/mfa/backup-codes/regenerate", response_model=BackupCodesResponse, responses=_errors)
async def regenerate_backup_codes(
    db: AsyncSession = Depends(get_db),
    current_user: UserModel = Depends(get_current_active_user),
) -> Any:
    plain_codes = await mfa_enrollment.regenerate_backup_codes(db, user=current_user)
    logger.info(f"User {current_user.email} regenerated backup codes.")
    return BackupCodesResponse(backup_codes=plain_codes)


@router.get("/me", response_model=AccountDetails, responses=_errors)
async def read_current_account(
    db: AsyncSession = Depends(get_db),
    current_user: UserModel = Depends(get_current_active_user),
) -> Any:
    remaining = await crud_mfa_recovery_code.count_unused(
        db, user_id=current_user.id, batch_id=current_user.backup_batch_id
    )
    snapshot = AccountSnapshot.model_validate(current_user)
    return AccountDetails(**snapshot.model_dump(), backup_codes_remaining=remaining)
